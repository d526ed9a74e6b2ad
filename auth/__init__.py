"""
auth — signed, stateless tokens.

Provides:
  • HMAC-SHA256 signed token codec (URL-safe, unpadded base64)
  • OAuth ``state`` guard built on the codec (10 minute TTL)
"""
