#!/usr/bin/env python3
"""
adsync API Startup Script

Starts the Meta sync FastAPI service with auto-reload for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the adsync API server."""
    print("Starting adsync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Run generate_keys.py or create .env with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("   INTERNAL_API_KEY=<shared secret>")
        print("")

    try:
        uvicorn.run(
            "adsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adsync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down adsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
