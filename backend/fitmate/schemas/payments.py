"""Pydantic schemas for membership payments"""
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(..., alias="userId")
    price_id: str = Field(..., alias="priceId", min_length=1)
    success_path: str = Field("/success", alias="successPath")
    cancel_path: str = Field("/cancel", alias="cancelPath")

    @field_validator("success_path", "cancel_path")
    @classmethod
    def must_be_relative_path(cls, v):
        # Return URLs are always on our own frontend origin
        if not v.startswith("/") or v.startswith("//"):
            raise ValueError("must be a path starting with '/'")
        return v
