from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import ToolContext, ToolSpec, fmt_num


class ActivitiesInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    start_date: Optional[str] = Field(default=None, alias="startDate", description="YYYY-MM-DD")
    end_date: Optional[str] = Field(default=None, alias="endDate", description="YYYY-MM-DD")
    symbol: Optional[str] = None
    account_id: Optional[str] = Field(default=None, alias="accountId")
    take: int = Field(default=20, ge=1, le=200)

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        s = v.strip().upper()
        return s or None


class CashTransferInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    amount: Optional[float] = None
    from_account_id: Optional[str] = Field(default=None, alias="fromAccountId")
    from_account_name: Optional[str] = Field(default=None, alias="fromAccountName")
    to_account_id: Optional[str] = Field(default=None, alias="toAccountId")
    to_account_name: Optional[str] = Field(default=None, alias="toAccountName")
    confirm: bool = False

    @field_validator("from_account_id", "from_account_name", "to_account_id", "to_account_name")
    @classmethod
    def _strip(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


def format_activity(a: Dict[str, Any]) -> str:
    date = str(a.get("date") or "")[:10] or "N/A"
    profile = a.get("SymbolProfile") or a.get("symbolProfile") or {}
    symbol = profile.get("symbol") or profile.get("name") or "N/A"
    quantity = a.get("quantity") or 0
    unit_price = a.get("unitPrice") or 0
    value = a.get("valueInBaseCurrency")
    if value is None:
        value = a.get("value")
    if value is None:
        try:
            value = float(quantity) * float(unit_price)
        except (TypeError, ValueError):
            value = 0
    account = (a.get("account") or {}).get("name") or "N/A"
    return (
        f"{date} | {a.get('type') or 'N/A'} | {symbol} | qty {quantity} @ {unit_price} "
        f"| value {fmt_num(value)} | {account}"
    )


async def run_activities_list(args: ActivitiesInput, ctx: ToolContext) -> str:
    activities = await ctx.backend.get_activities(
        ctx.user_id,
        start_date=args.start_date,
        end_date=args.end_date,
        symbol=args.symbol,
        account_id=args.account_id,
        take=args.take,
    )
    if not activities:
        return "No activities found for the given filters."
    lines = [format_activity(a) for a in activities]
    return f"Activities ({len(activities)}):\n" + "\n".join(lines)


def resolve_account(
    accounts: List[Dict[str, Any]],
    account_id: Optional[str],
    account_name: Optional[str],
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Match by id, then exact name, then unique partial name. Returns (account, error)."""
    if account_id:
        for account in accounts:
            if account.get("id") == account_id:
                return account, None
        return None, f'Account with id "{account_id}" not found.'

    if account_name:
        wanted = account_name.strip().lower()
        exact = [a for a in accounts if str(a.get("name") or "").strip().lower() == wanted]
        if len(exact) == 1:
            return exact[0], None
        if len(exact) > 1:
            return None, f'Multiple accounts match "{account_name}". Please use account id.'

        partial = [a for a in accounts if wanted in str(a.get("name") or "").strip().lower()]
        if len(partial) == 1:
            return partial[0], None
        if len(partial) > 1:
            candidates = ", ".join(f"{a.get('name')} ({a.get('id')})" for a in partial)
            return None, f'Multiple accounts match "{account_name}": {candidates}.'
        return None, f'Account named "{account_name}" not found.'

    return None, (
        "Missing account reference. Provide fromAccountId/fromAccountName and toAccountId/toAccountName."
    )


async def run_cash_transfer(args: CashTransferInput, ctx: ToolContext) -> str:
    amount = args.amount
    if amount is None or amount <= 0:
        return "Error: amount is required and must be greater than 0."

    accounts = await ctx.backend.get_accounts(ctx.user_id)

    source, error = resolve_account(accounts, args.from_account_id, args.from_account_name)
    if error or source is None:
        return f"Error: {error}"
    target, error = resolve_account(accounts, args.to_account_id, args.to_account_name)
    if error or target is None:
        return f"Error: {error}"

    if source.get("id") == target.get("id"):
        return "Error: source and destination accounts must be different."

    currency = source.get("currency") or ctx.user_currency
    balance = float(source.get("balance") or 0)
    if balance < amount:
        return f'Error: insufficient funds in "{source.get("name")}". Available: {balance} {currency}.'

    if not args.confirm:
        return "\n".join(
            [
                "Transfer preview",
                f"From: {source.get('name')} ({source.get('id')})",
                f"To: {target.get('name')} ({target.get('id')})",
                f"Amount: {amount} {currency}",
                f"Current source balance: {balance} {currency}",
                "Action not executed. Set confirm=true to execute this transfer.",
            ]
        )

    await ctx.backend.update_account_balance(ctx.user_id, str(source.get("id")), -amount, currency)
    await ctx.backend.update_account_balance(ctx.user_id, str(target.get("id")), amount, currency)
    return "\n".join(
        [
            "Transfer completed.",
            f"From: {source.get('name')}",
            f"To: {target.get('name')}",
            f"Amount: {amount} {currency}",
        ]
    )


ACTIVITIES_LIST = ToolSpec(
    name="activities_list",
    description=(
        'Use when the user asks for recent transactions, list of orders, "what did I buy/sell?", '
        '"my activities", or similar; optionally filtered by startDate/endDate (YYYY-MM-DD), symbol, '
        "accountId, and take (default 20)."
    ),
    input_model=ActivitiesInput,
    run=run_activities_list,
    failure="retrieve activities",
)

CASH_TRANSFER = ToolSpec(
    name="cash_transfer",
    description=(
        "Use when the user asks to move/transfer cash between their accounts. Arguments: amount, "
        "fromAccountId or fromAccountName, toAccountId or toAccountName, confirm. First call with "
        "confirm=false to preview; execute only when the user confirmed and confirm=true."
    ),
    input_model=CashTransferInput,
    run=run_cash_transfer,
    failure="complete cash transfer",
)
