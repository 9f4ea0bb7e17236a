#!/usr/bin/env python3
"""
etsydash API Startup Script

Starts the etsydash FastAPI server. The scheduled Etsy sync runs separately:

    arq etsydash.workers.arq_worker.WorkerSettings
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the etsydash API server."""
    print("Starting etsydash API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   JWT_SECRET=your-secret-key-here")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("   ETSY_API_KEY=<etsy keystring>")
        print("   DATABASE_URL=postgresql://...")
        print("")

    try:
        uvicorn.run(
            "etsydash.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["etsydash"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down etsydash API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
