#!/usr/bin/env python3
"""
Billing API Startup Script

This script starts the FastAPI server (Stripe webhooks, admin replay, legacy
QR redirects).
"""

import uvicorn
import sys
from pathlib import Path

def main():
    """Start the billing API server."""
    print("Starting billing API server...")
    print("   Stripe webhook:  POST http://localhost:8000/api/stripe/webhook")
    print("   Swagger UI:      http://localhost:8000/docs")
    print("")

    # Check for environment file
    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with these variables:")
        print("   DATABASE_URL=postgresql://...")
        print("   STRIPE_WEBHOOK_SECRET=whsec_...")
        print("   STRIPE_SECRET_KEY=sk_...")
        print("   ADMIN_SECRET=your-admin-secret")
        print("")

    try:
        uvicorn.run(
            "app.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["app"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down billing API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
