#!/usr/bin/env python3
"""
PharmaBill API Startup Script

Starts the billing API (webhooks, subscription endpoints, admin lifecycle ops)
with auto-reload for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the PharmaBill API server."""
    print("Starting PharmaBill API Server...")
    print("   Swagger UI:   http://localhost:8000/docs")
    print("   Admin Panel:  http://localhost:8000/admin/panel")
    print("   Webhooks:     POST http://localhost:8000/webhooks/{provider}")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   JWT_SECRET=your-secret-key-here")
        print("   ADMIN_SECRET_KEY=your-admin-secret")
        print("   NOMBA_WEBHOOK_SECRET=shared-webhook-secret")
        print("")

    try:
        uvicorn.run(
            "pharmabill.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["pharmabill"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down PharmaBill API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
