from app.merchops import create_app

app = create_app()
