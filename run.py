#!/usr/bin/env python3
"""
Run script for the HRMS services.

Usage: python run.py [gateway|auth] [port]
"""
import sys
import traceback

import uvicorn

APPS = {
    "gateway": ("hrms_services.gateway.main:app", 3000),
    "auth": ("hrms_services.auth.main:app", 3001),
}

if __name__ == "__main__":
    name = sys.argv[1] if len(sys.argv) > 1 else "gateway"
    if name not in APPS:
        print(f"Unknown service '{name}'. Choose one of: {', '.join(APPS)}")
        sys.exit(2)
    target, default_port = APPS[name]
    port = int(sys.argv[2]) if len(sys.argv) > 2 else default_port
    try:
        print(f"Starting HRMS {name} on http://localhost:{port}...")
        uvicorn.run(target, host="0.0.0.0", port=port, log_level="info")
    except Exception as e:
        print(f"Error starting server: {e}")
        traceback.print_exc()
        sys.exit(1)
