"""
Example tool handlers for the utility agent.

These return canned data; swap in real lookups by registering different
handlers under the same names.
"""

import logging
from datetime import date, datetime, timedelta, timezone

from .voice.prompts import CHECK_POWER_OUTAGE_TOOL, UPDATE_ADDRESS_TOOL
from .voice.tools import ToolRegistry

logger = logging.getLogger(__name__)


async def check_power_outage(params: dict) -> dict:
    """Report the outage status for a zipcode."""
    zipcode = params.get("zipcode")
    logger.info(f"Checking power outage for zipcode {zipcode}")
    restoration = datetime.now(timezone.utc) + timedelta(hours=2)
    return {
        "zipcode": zipcode,
        "has_outage": True,
        "estimated_restoration": restoration.isoformat(),
        "affected_customers": 150,
    }


async def update_address(params: dict) -> dict:
    """Change the service address after PIN verification."""
    new_address = params.get("new_address")
    if not params.get("pin"):
        raise ValueError("A PIN is required to update the address")
    logger.info("Updating customer address")
    return {
        "success": True,
        "updated_address": new_address,
        "effective_date": date.today().isoformat(),
    }


def default_registry() -> ToolRegistry:
    """Registry with the example handlers and their tool schemas."""
    registry = ToolRegistry()
    registry.register("check_power_outage", check_power_outage, CHECK_POWER_OUTAGE_TOOL)
    registry.register("update_address", update_address, UPDATE_ADDRESS_TOOL)
    return registry
