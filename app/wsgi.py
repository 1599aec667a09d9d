from app.fieldops import create_app

app = create_app()
