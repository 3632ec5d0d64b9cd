"""Local development entry point.

Usage:
    python run.py

Periodic jobs run through the Flask CLI:
    flask --app run sweep-reservations
    flask --app run auto-release-escrow
    flask --app run reconcile-payouts
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from marketpay import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
