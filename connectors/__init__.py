"""
connectors — mailbox OAuth integration.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation
  • Callback handling (code → normalised token bundle)
  • Per-tenant encrypted token storage & auto-refresh
  • AES-256-GCM encryption of tokens at rest

Each provider (Gmail, Outlook) is a subclass of BaseConnector.
"""
