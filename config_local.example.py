# config_local.example.py

"""
Example local overrides.

Usage:
  1) Copy this file to `config_local.py`
  2) Adjust values for your machine
  3) Never commit `config_local.py` (it is gitignored)

Prefer `.env` for anything else. Only the names below are read from this file.
"""

# Example: headless service (no operator REPL)
# CONSOLE_ENABLED = False

# Example: console only, no websocket server
# WEBSOCKET_ENABLED = False

# Example: scan deadlines more often while testing locally
# SCAN_INTERVAL_SECONDS = 5

# Example: different port for the push endpoint
# WEBSOCKET_PORT = 8081
