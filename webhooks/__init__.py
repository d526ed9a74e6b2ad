"""
webhooks — inbound Jobber webhook receiver.

  • HMAC-SHA256 signature check on the raw request body
  • Dedupe by (external id, payload hash) at the storage layer
  • Event + PENDING job persisted in one transaction
"""
