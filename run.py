#!/usr/bin/env python3
"""
LendIt P2P Lending Entry Point

Starts the FastAPI server with the lending core. Host, port and database
come from LENDIT_* environment variables (see core_lending.config).
"""

import sys

from core_lending.api import run_server
from core_lending.config import get_config


if __name__ == "__main__":
    cfg = get_config()
    print("🤝 Starting LendIt P2P Lending...")
    print(f"🗄️  Database: {cfg.database_url}")
    print("🔒 Audit trail active")
    print("💰 All financial calculations use Decimal precision")
    print(f"🌐 API available at: http://localhost:{cfg.api_port}")
    print(f"📚 Documentation at: http://localhost:{cfg.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down LendIt...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
