#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server using the host and port from configuration.
"""

import sys

from loan_servicing.api import run_server
from loan_servicing.config import get_config


if __name__ == "__main__":
    config = get_config()
    print(f"Starting Loan Servicing API on http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
