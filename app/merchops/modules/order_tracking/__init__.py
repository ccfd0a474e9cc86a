"""
Order tracking module (dashboard API + scheduled stuck-order check).

Scope:
- Upstream sales orders (OAuth2 with rotating refresh tokens), fetched page by page
- Quote/invoice correlation for selling price, profit and customer
- Per-order delivery stage from carrier tracking events, stuck-order detection
- At most one stuck-order alert per order per UTC day (outbox in order_notification_log)
- CSV/PDF orders export
"""
