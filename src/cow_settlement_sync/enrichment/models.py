"""Data models for settlement API responses."""

import contextlib
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal


def normalize_amount(value: Any) -> str:
    """Normalize a token amount to a plain decimal string.

    Amounts arrive as decimal strings of uint256 values. Floats are rejected
    because they cannot carry 18-decimal token amounts exactly.
    """
    if value is None or value == "":
        return "0"
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Refusing non-exact amount {value!r}")
    if isinstance(value, int):
        return str(value)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount {value!r}")
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount, "f")


@dataclass(frozen=True)
class OrderFill:
    """One order settled by a settlement transaction."""

    sell_token: str
    buy_token: str
    sell_amount: str
    buy_amount: str
    executed_sell_amount: str
    executed_sell_amount_before_fees: str
    executed_buy_amount: str
    kind: Literal["buy", "sell"]
    receiver: str | None = None
    uid: str | None = None
    creation_date: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderFill":
        """Create an OrderFill from a settlement API order object.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        kind = str(data.get("kind", "")).lower()
        if kind not in ("buy", "sell"):
            raise ValueError(f"Unknown order kind {data.get('kind')!r}")

        sell_token = data.get("sellToken")
        buy_token = data.get("buyToken")
        if not sell_token or not buy_token:
            raise ValueError("Order is missing sellToken/buyToken")

        creation_date = None
        creation_raw = data.get("creationDate")
        if creation_raw:
            with contextlib.suppress(ValueError, AttributeError):
                creation_date = datetime.fromisoformat(str(creation_raw).replace("Z", "+00:00"))

        receiver = data.get("receiver")
        uid = data.get("uid")
        return cls(
            sell_token=str(sell_token).lower(),
            buy_token=str(buy_token).lower(),
            sell_amount=normalize_amount(data.get("sellAmount")),
            buy_amount=normalize_amount(data.get("buyAmount")),
            executed_sell_amount=normalize_amount(data.get("executedSellAmount")),
            executed_sell_amount_before_fees=normalize_amount(
                data.get("executedSellAmountBeforeFees")
            ),
            executed_buy_amount=normalize_amount(data.get("executedBuyAmount")),
            kind=kind,  # type: ignore[arg-type]
            receiver=str(receiver).lower() if receiver else None,
            uid=str(uid) if uid else None,
            creation_date=creation_date,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the settlement API field names."""
        data = asdict(self)
        return {
            "uid": data["uid"],
            "sellToken": data["sell_token"],
            "buyToken": data["buy_token"],
            "sellAmount": data["sell_amount"],
            "buyAmount": data["buy_amount"],
            "executedSellAmount": data["executed_sell_amount"],
            "executedSellAmountBeforeFees": data["executed_sell_amount_before_fees"],
            "executedBuyAmount": data["executed_buy_amount"],
            "kind": data["kind"],
            "receiver": data["receiver"],
            "creationDate": self.creation_date.isoformat() if self.creation_date else None,
        }
