#!/usr/bin/env python3
"""
Perp Trader - Main Entry Point
Runs the trading core and its control API.
"""
import uvicorn

from perp_trader.app import app
from perp_trader.config import settings

if __name__ == "__main__":
    print("Starting Perp Trader...")
    print(f"API Docs: http://localhost:{settings.APP_PORT}/docs")
    print("Press Ctrl+C to stop.")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=False
    )
