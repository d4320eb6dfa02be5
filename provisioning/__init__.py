"""
provisioning — per-tenant n8n resources.

Provides:
  • A thin client for the n8n public REST API
  • Provider workflow templates and credential payloads
  • The idempotent ResourceProvisioner state machine
"""
