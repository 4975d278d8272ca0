#!/usr/bin/env python3

import uvicorn
from poolsync.config import get_settings
from poolsync.main import app

if __name__ == "__main__":
    settings = get_settings()
    print("Starting poolsync server...")
    print(f"Server will be available at: http://localhost:{settings.PORT}")
    print(f"API documentation at: http://localhost:{settings.PORT}/docs")
    print("Press Ctrl+C to stop the server")

    try:
        uvicorn.run(
            app,
            host=settings.HOST,
            port=settings.PORT,
            reload=False,
            log_level=settings.LOG_LEVEL.lower()
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")
