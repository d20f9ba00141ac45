"""
Subscription price types.

A price is stored on the subscription as a snapshot and is one of a closed
set of variants discriminated by ``amount_type``. Code that consumes a price
matches every variant and ends in ``assert_never`` so a new variant cannot
be added without updating it.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from typing_extensions import assert_never


class ProductPriceFixed(BaseModel):
    amount_type: Literal["fixed"] = "fixed"
    price_amount: int = Field(..., ge=0, description="Amount per period in cents")


class ProductPriceCustom(BaseModel):
    """Pay-what-you-want price; the customer's chosen amount is ``preset_amount``."""

    amount_type: Literal["custom"] = "custom"
    minimum_amount: int = Field(default=0, ge=0)
    preset_amount: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_preset(self) -> "ProductPriceCustom":
        if self.preset_amount is not None and self.preset_amount < self.minimum_amount:
            raise ValueError("preset_amount must not be below minimum_amount")
        return self


class ProductPriceFree(BaseModel):
    amount_type: Literal["free"] = "free"


class ProductPriceMeteredUnit(BaseModel):
    amount_type: Literal["metered_unit"] = "metered_unit"
    unit_amount: int = Field(..., ge=0, description="Cents per recorded unit")
    cap_amount: Optional[int] = Field(default=None, ge=0, description="Per-period ceiling")


ProductPrice = Annotated[
    Union[ProductPriceFixed, ProductPriceCustom, ProductPriceFree, ProductPriceMeteredUnit],
    Field(discriminator="amount_type"),
]

_price_adapter: TypeAdapter[ProductPrice] = TypeAdapter(ProductPrice)


def parse_price(data: Dict[str, Any]) -> ProductPrice:
    return _price_adapter.validate_python(data)


def order_amount(price: ProductPrice, metered_units: int = 0) -> int:
    """Amount to bill for one period of ``price``."""
    if isinstance(price, ProductPriceFixed):
        return price.price_amount
    elif isinstance(price, ProductPriceCustom):
        if price.preset_amount is not None:
            return price.preset_amount
        return price.minimum_amount
    elif isinstance(price, ProductPriceFree):
        return 0
    elif isinstance(price, ProductPriceMeteredUnit):
        amount = price.unit_amount * metered_units
        if price.cap_amount is not None:
            amount = min(amount, price.cap_amount)
        return amount
    else:
        assert_never(price)


def is_metered(price: ProductPrice) -> bool:
    if isinstance(price, ProductPriceMeteredUnit):
        return True
    elif isinstance(price, (ProductPriceFixed, ProductPriceCustom, ProductPriceFree)):
        return False
    else:
        assert_never(price)
