# services/__init__.py
# ============================================================================
# VIRTUAL STAGING SERVICE — SERVICES MODULE
# ============================================================================
# External rendering provider client
# ============================================================================

from services.render_client import VirtualStagingClient

__all__ = [
    "VirtualStagingClient",
]
