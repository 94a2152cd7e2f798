"""
CRM Adapter Factory.
Creates the appropriate adapter based on CRM type and credentials.
"""

from .base import CRMAdapter
from .hubspot_adapter import HubSpotAdapter


def create_adapter(crm_type: str, credentials: dict, config: dict = None) -> CRMAdapter:
    """
    Factory function to create the appropriate CRM adapter.

    Args:
        crm_type: CRM type string (only 'hubspot' is mirrored)
        credentials: Credentials dict, e.g. {"access_token": ...}
        config: Optional settings: max_retries, default_country_code

    Returns:
        CRMAdapter instance

    Raises:
        ValueError: If CRM type is not supported or the token is missing
    """
    config = config or {}

    if crm_type == "hubspot":
        from hubspot_crm import HubSpotCRM, HUBSPOT_MAX_RETRIES
        token = credentials.get("access_token", "")
        if not token:
            raise ValueError("HubSpot access token is required")
        client = HubSpotCRM(
            access_token=token,
            max_retries=config.get("max_retries", HUBSPOT_MAX_RETRIES),
            rate_limiter=config.get("rate_limiter"),
        )
        return HubSpotAdapter(client, default_country_code=config.get("default_country_code"))

    else:
        raise ValueError(f"Unsupported CRM type: {crm_type}")


__all__ = [
    "CRMAdapter",
    "HubSpotAdapter",
    "create_adapter",
]
