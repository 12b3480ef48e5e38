"""
NGSI-LD Temporal API Server Entry Point

Starts the FastAPI server for the temporal API.

Usage:
    python -m ngsild_temporal
"""

import sys

from ngsild_temporal.config import get_settings, setup_logging


def main():
    """Start the FastAPI server."""

    print("=" * 80)
    print("NGSI-LD Temporal API Server")
    print("=" * 80)
    print()

    # Verify configuration
    try:
        settings = get_settings()
        print("✓ Configuration loaded")
        print(f"  - Database: {settings.db_path}")
        print(f"  - Core context: {settings.core_context}")
        print(f"  - Temporal instances limit: {settings.pagination_temporal_limit}")
        print()
    except Exception as e:
        print(f"✗ Configuration error: {e}")
        print()
        print("Please check the environment variables or the .env file.")
        sys.exit(1)

    setup_logging(settings.log_level)

    # Start server
    print("Starting FastAPI server...")
    print(f"Server will be available at: http://localhost:{settings.server_port}")
    print(f"API documentation: http://localhost:{settings.server_port}/docs")
    print()
    print("Press Ctrl+C to stop the server")
    print("=" * 80)
    print()

    import uvicorn
    from ngsild_temporal.server.app import app

    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        print(f"\n\n✗ Server error: {e}")
        sys.exit(1)
