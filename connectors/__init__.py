"""
connectors — OAuth grants for the Google destinations.

Provides a small connector framework that handles:
  • OAuth2 auth-URL generation
  • Callback handling (code → token exchange)
  • Per-user credential storage with single-flight refresh
  • Fernet encryption of tokens at rest
  • Revocation / disconnect

Each stored grant (``sheets``, ``calendar``) is a subclass of BaseConnector.
"""
