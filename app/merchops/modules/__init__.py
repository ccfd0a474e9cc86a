"""
Feature modules live under this package.

Each module owns its routes, models and upstream clients, while reusing the platform
primitives in app.merchops (config, audit, DB session, dashboard auth).
"""
