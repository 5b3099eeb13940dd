"""
auth — identity for the connector and submission-management routes.

Provides:
  • verification of tokens issued by the identity system
  • ``get_current_user_id`` FastAPI dependency
"""
