#!/usr/bin/env python3
"""
P2P Lending Platform Entry Point

Starts the FastAPI server with the loan lifecycle engine.
"""

import sys

from p2p_lending.api import run_server
from p2p_lending.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting P2P Lending Platform...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()
    
    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down P2P Lending Platform...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
