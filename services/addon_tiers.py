"""
Add-on tier table: credits granted and WhatsApp template per purchasable add-on
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict

logger = logging.getLogger(__name__)

DEFAULT_WHATSAPP_TEMPLATE = 'nac_spacetopia_no_cre'


@dataclass(frozen=True)
class AddonTier:
    addon_id: str
    credits: int
    whatsapp_template: str


ADDON_TIERS: Dict[str, AddonTier] = {
    'credits': AddonTier('credits', 35, 'nac_spacetopia_cre'),
    'basic': AddonTier('basic', 240, 'nac_spacetopia_protostar'),
    'premium': AddonTier('premium', 315, 'nac_spacetopia_supernova'),
}


def get_addon_tier(addon_id: Optional[str]) -> Optional[AddonTier]:
    """Look up a known tier; unknown or empty ids return None"""
    if not addon_id:
        return None
    return ADDON_TIERS.get(str(addon_id).strip().lower())


def get_addon_credits(addon_id: Optional[str]) -> int:
    """Credits granted for an add-on, 0 for unknown or absent add-ons"""
    tier = get_addon_tier(addon_id)
    return tier.credits if tier else 0


def get_whatsapp_template(addon_id: Optional[str]) -> str:
    """WhatsApp template for an add-on, the no-add-on template otherwise"""
    tier = get_addon_tier(addon_id)
    if tier is None:
        if addon_id:
            logger.debug(f"Unknown add-on '{addon_id}', using default WhatsApp template")
        return DEFAULT_WHATSAPP_TEMPLATE
    return tier.whatsapp_template
