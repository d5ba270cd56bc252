#!/usr/bin/env python3
"""
Business Health Sync API Startup Script

This script starts the FastAPI server that connects providers and runs syncs.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the API server."""
    print("🚀 Starting Business Health Sync API...")
    print("📊 Features:")
    print("   ✅ Provider catalog and OAuth connect")
    print("   ✅ Manual sync and disconnect")
    print("   ✅ Score history")
    print("   ✅ Cron-triggered fleet sync")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Run `python generate_keys.py` to create one from .env.template, then set:")
        print("   DATABASE_URL=postgresql://...")
        print("   SCORE_FUNCTION=package.module:compute_score")
        print("")

    try:
        uvicorn.run(
            "bizhealth.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["bizhealth"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
