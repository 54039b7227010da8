from __future__ import annotations

"""Pydantic request schemas for the operator API.

These exist only for HTTP input validation. Domain validation (address
parsing, fee bounds, market times) stays in the provisioning and mutation
layers so the messages match regardless of the caller.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field


class SelectNetworkRequest(BaseModel):
    network: str = Field(..., description="devnet, mainnet-beta or local")


class CreateAuthorityRequest(BaseModel):
    name: str = Field(..., description="Market creator display name")
    fee_vault: str = Field(..., description="Fee recipient address (base58)")
    fee_percent: float = Field(default=1.0, description="Creator fee in percent, 0-20")


class CreateCollectionRequest(BaseModel):
    name: Optional[str] = Field(default=None, description="Defaults to '<authority name> Collection'")
    uri: Optional[str] = Field(default=None, description="Collection metadata URI")


class CreateTreeRequest(BaseModel):
    preset_id: Optional[str] = Field(default=None, description="Tree preset id, default 65536")


class UpdateFeeVaultRequest(BaseModel):
    fee_vault: str


class UpdateFeeRequest(BaseModel):
    fee_percent: float


class CreateMarketRequest(BaseModel):
    question: str = ""
    metadata_uri: str = ""
    # Unix seconds or ISO-8601.
    start_time: Optional[Union[int, str]] = None
    end_time: Optional[Union[int, str]] = None
    betting_start_time: Optional[Union[int, str]] = None
    market_type: str = "live"
    oracle_type: str = "manual"
    oracle_pubkey: str = ""
    mint_choice: str = "usdc"
    custom_mint: str = ""


class ResolveMarketRequest(BaseModel):
    choice: str = Field(..., description="yes, no or oracle")
