#!/usr/bin/env python3
"""
Loan Servicing Engine Entry Point

Starts the FastAPI server with the loan servicing engine.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_servicing.api import run_server
from loan_servicing.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Loan Servicing Engine...")
    print("Interest accrual: Actual/365, rounded per segment")
    print("All financial calculations use Decimal precision")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(
            host=settings.api_host,
            port=settings.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
