"""
auth — OAuth flow protection.

Provides:
  • Signed, time-bound OAuth ``state`` strings (HMAC-SHA256)
"""
