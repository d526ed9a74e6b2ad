"""
connectors — OAuth integration with the Jobber API.

Handles:
  • Authorization URL generation behind a signed anti-CSRF state
  • Callback handling (code → token exchange)
  • Per-connection token storage & refresh-before-expiry
  • Fernet encryption of tokens at rest
  • Disconnect
"""
