"""Local development entry point.

Usage:
    python run.py

Loads .env, then serves the JSON API with the development config. Point
Creem test-mode webhooks at <tunnel>/api/billing/webhooks/creem.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from app import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5000)
