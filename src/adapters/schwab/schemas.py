"""Typed views of the Schwab trader API payloads the sync engine reads.

Only the fields the engine uses are modelled; everything else is ignored. Missing
optional values come through as None so callers have to decide what a gap means.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _SchwabModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Instrument(_SchwabModel):
    symbol: str = ""
    asset_type: Optional[str] = Field(default=None, alias="assetType")
    description: Optional[str] = None


class Position(_SchwabModel):
    long_quantity: float = Field(default=0.0, alias="longQuantity")
    short_quantity: float = Field(default=0.0, alias="shortQuantity")
    average_price: Optional[float] = Field(default=None, alias="averagePrice")
    market_value: Optional[float] = Field(default=None, alias="marketValue")
    instrument: Instrument = Field(default_factory=Instrument)

    @property
    def symbol(self) -> str:
        return self.instrument.symbol


class CurrentBalances(_SchwabModel):
    liquidation_value: Optional[float] = Field(default=None, alias="liquidationValue")
    equity: Optional[float] = None
    cash_balance: Optional[float] = Field(default=None, alias="cashBalance")
    available_funds: Optional[float] = Field(default=None, alias="availableFunds")


class SecuritiesAccount(_SchwabModel):
    type: Optional[str] = None
    account_number: Optional[str] = Field(default=None, alias="accountNumber")
    positions: list[Position] = Field(default_factory=list)
    current_balances: Optional[CurrentBalances] = Field(default=None, alias="currentBalances")


class AccountResponse(_SchwabModel):
    securities_account: Optional[SecuritiesAccount] = Field(default=None, alias="securitiesAccount")

    @property
    def positions(self) -> list[Position]:
        if self.securities_account is None:
            return []
        return list(self.securities_account.positions)

    @property
    def balances(self) -> CurrentBalances:
        if self.securities_account is None or self.securities_account.current_balances is None:
            return CurrentBalances()
        return self.securities_account.current_balances


class OrderLeg(_SchwabModel):
    instruction: Optional[str] = None
    quantity: Optional[float] = None
    instrument: Instrument = Field(default_factory=Instrument)


class Order(_SchwabModel):
    order_id: int = Field(alias="orderId")
    order_type: Optional[str] = Field(default=None, alias="orderType")
    status: Optional[str] = None
    stop_price: Optional[float] = Field(default=None, alias="stopPrice")
    remaining_quantity: Optional[float] = Field(default=None, alias="remainingQuantity")
    order_leg_collection: list[OrderLeg] = Field(default_factory=list, alias="orderLegCollection")

    @property
    def primary_leg(self) -> Optional[OrderLeg]:
        return self.order_leg_collection[0] if self.order_leg_collection else None


class TokenResponse(_SchwabModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
