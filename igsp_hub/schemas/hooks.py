from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class HookModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    def canonical(self) -> dict:
        """Fields that decide whether two requests are the same request."""
        return self.model_dump(mode="json")


class SessionCreateRequest(HookModel):
    action: Literal["session-create"]
    session_id: str = Field(min_length=1)
    game_id: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    balance: Decimal
    device: Literal["desktop", "mobile"] = "desktop"
    return_url: Optional[str] = None
    language: str = "en"
    is_demo: bool = False

    def canonical(self) -> dict:
        body = self.model_dump(mode="json")
        body["balance"] = str(self.balance.normalize())
        return body


class BalanceRequest(HookModel):
    action: Literal["balance"]
    player_id: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    session_id: Optional[str] = None


class _MoneyMovement(HookModel):
    transaction_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    amount: Decimal
    round_id: Optional[str] = None
    finished: bool = True

    def canonical(self) -> dict:
        body = self.model_dump(mode="json")
        # 2.5 and 2.50 are the same money
        body["amount"] = str(self.amount.normalize())
        return body


class BetRequest(_MoneyMovement):
    action: Literal["bet"]
    type: str = "bet"


class WinRequest(_MoneyMovement):
    action: Literal["win"]
    type: str = "win"


class RefundRequest(HookModel):
    action: Literal["refund"]
    transaction_id: str = Field(min_length=1)
    bet_transaction_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    amount: Optional[Decimal] = None
    round_id: Optional[str] = None
    type: str = "refund"

    def canonical(self) -> dict:
        body = self.model_dump(mode="json")
        if self.amount is not None:
            body["amount"] = str(self.amount.normalize())
        return body


WalletRequest = Union[BalanceRequest, BetRequest, WinRequest, RefundRequest]

HookRequest = Annotated[
    Union[SessionCreateRequest, BalanceRequest, BetRequest, WinRequest, RefundRequest],
    Field(discriminator="action"),
]

hook_request_adapter: TypeAdapter[HookRequest] = TypeAdapter(HookRequest)


class SessionCreatedResponse(BaseModel):
    url: str


class BalanceResponse(BaseModel):
    balance: str


class TransactionResponse(BaseModel):
    balance: str
    transaction_id: str


class ErrorResponse(BaseModel):
    error: str
    message: str
