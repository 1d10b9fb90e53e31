#!/usr/bin/env python3
"""
Client Onboarding System Entry Point

Starts the FastAPI server with the client onboarding system. Host, port,
storage backend and logging come from ONBOARDING_* environment variables.
"""

import sys

from client_onboarding.config import get_config
from client_onboarding.logging_config import setup_logging
from client_onboarding.api import run_server


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, "onboarding", config.log_format)

    print("📋 Starting Client Onboarding System...")
    print(f"💾 Storage backend: {config.storage_backend}")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Client Onboarding System...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
