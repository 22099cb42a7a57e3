"""
Credit pack catalog.

Maps store SKU ids to base and bonus credits.
"""

from dataclasses import dataclass

from credit_ledger.exceptions import ValidationError


@dataclass(frozen=True)
class CreditPack:
    """Consumable credit pack configuration."""

    sku_id: str
    credits: int
    bonus: int
    name: str

    def __post_init__(self) -> None:
        """Validate pack configuration."""
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if self.bonus < 0:
            raise ValueError(f"Bonus cannot be negative: {self.bonus}")
        if not self.sku_id:
            raise ValueError("SKU ID required")

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus


# Must match the Play Console in-app product configuration
CREDIT_PACKS: dict[str, CreditPack] = {
    "credits_10": CreditPack(sku_id="credits_10", credits=10, bonus=0, name="10 Credits"),
    "credits_50": CreditPack(sku_id="credits_50", credits=50, bonus=5, name="50 Credits"),
    "credits_100": CreditPack(sku_id="credits_100", credits=100, bonus=20, name="100 Credits"),
    "credits_500": CreditPack(sku_id="credits_500", credits=500, bonus=150, name="500 Credits"),
}


def get_pack(sku_id: str) -> CreditPack:
    """
    Get pack configuration by SKU.

    Raises:
        ValidationError: If the SKU is not sold
    """
    pack = CREDIT_PACKS.get(sku_id)
    if pack is None:
        raise ValidationError(f"Unknown SKU: {sku_id}")
    return pack
