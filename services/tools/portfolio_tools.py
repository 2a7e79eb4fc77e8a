from __future__ import annotations

import re
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import ToolContext, ToolSpec, first_present, fmt_num, fmt_pct

VALID_DATE_RANGES = ("1d", "1y", "5y", "max", "mtd", "wtd", "ytd")
_YEAR_RANGE_RE = re.compile(r"^\d{4}$")
INCOMPLETE_NOTE = "(Note: Some data may be incomplete due to calculation errors.)"


class NoArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PerformanceInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date_range: str = Field(
        default="max",
        alias="dateRange",
        description='One of 1d, 1y, 5y, max, mtd, wtd, ytd, or a year such as "2024".',
    )

    @field_validator("date_range", mode="before")
    @classmethod
    def _normalize_range(cls, v: Any) -> str:
        # Unknown ranges fall back to the whole history instead of failing.
        if not isinstance(v, str):
            return "max"
        value = v.strip().lower()
        if value in VALID_DATE_RANGES or _YEAR_RANGE_RE.match(value):
            return value
        return "max"


def _mapping_values(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, dict):
        items = []
        for key, value in raw.items():
            if isinstance(value, dict):
                items.append({"id": key, **value})
        return items
    if isinstance(raw, list):
        return [v for v in raw if isinstance(v, dict)]
    return []


def format_details(result: Dict[str, Any]) -> str:
    parts: List[str] = []

    summary = result.get("summary")
    if isinstance(summary, dict):
        parts.append(
            "\n".join(
                [
                    "Summary:",
                    f"- Total value (base currency): {fmt_num(summary.get('totalValueInBaseCurrency'))}",
                    f"- Gross performance: {fmt_num(summary.get('grossPerformance'))}",
                    f"- Net performance: {fmt_num(summary.get('netPerformance'))}",
                    f"- Annualized performance: {fmt_pct(summary.get('annualizedPerformancePercent'))}",
                    f"- Cash: {fmt_num(summary.get('cash'))}",
                    f"- Activity count: {summary.get('activityCount') or 0}",
                ]
            )
        )

    holdings = _mapping_values(result.get("holdings"))
    if holdings:
        holdings.sort(key=lambda h: h.get("allocationInPercentage") or 0, reverse=True)
        lines = [
            f"- {h.get('symbol') or h.get('id')} ({h.get('name') or 'N/A'}): "
            f"{fmt_pct(h.get('allocationInPercentage') or 0)}, "
            f"value {fmt_num(h.get('valueInBaseCurrency') or 0)} {h.get('currency') or ''}".rstrip()
            for h in holdings
        ]
        parts.append("Holdings (allocation %):\n" + "\n".join(lines))

    accounts = _mapping_values(result.get("accounts"))
    if accounts:
        lines = [
            f"- {a.get('name') or a.get('id')}: {fmt_num(a.get('valueInBaseCurrency') or 0)} {a.get('currency') or ''}".rstrip()
            for a in accounts
        ]
        parts.append("Accounts:\n" + "\n".join(lines))

    if result.get("hasErrors"):
        parts.append(INCOMPLETE_NOTE)

    return "\n\n".join(parts) if parts else "No portfolio data available."


def format_performance(result: Dict[str, Any]) -> str:
    parts: List[str] = []
    perf = result.get("performance")
    if isinstance(perf, dict):
        net_pct = perf.get("netPerformancePercentage")
        parts.extend(
            [
                f"Net performance: {fmt_num(perf.get('netPerformance') or 0)}",
                f"Net performance (%): {fmt_pct(net_pct or 0)}",
                "Current net worth: "
                + fmt_num(first_present(perf, "currentNetWorth", "currentValueInBaseCurrency") or 0),
                f"Total investment: {fmt_num(perf.get('totalInvestment') or 0)}",
            ]
        )
        with_fx = perf.get("netPerformancePercentageWithCurrencyEffect")
        if with_fx is not None and with_fx != net_pct:
            parts.append(f"Net performance with currency effect (%): {fmt_pct(with_fx)}")

    chart = result.get("chart")
    if isinstance(chart, list) and chart:
        first = chart[0] if isinstance(chart[0], dict) else {}
        last = chart[-1] if isinstance(chart[-1], dict) else {}
        start = first_present(first, "netWorth", "value", "valueWithCurrencyEffect")
        end = first_present(last, "netWorth", "value", "valueWithCurrencyEffect")
        if start is not None or end is not None:
            parts.append(f"Chart: {len(chart)} points; start {fmt_num(start)} -> end {fmt_num(end)}")

    if result.get("hasErrors"):
        parts.append(INCOMPLETE_NOTE)
    return "\n".join(parts) if parts else "No performance data available."


def _format_rule(rule: Dict[str, Any]) -> str:
    status = "Fulfilled" if rule.get("value") is True else "Not fulfilled"
    evaluation = rule.get("evaluation")
    suffix = f" ({evaluation})" if evaluation else ""
    return f"- {rule.get('name') or 'Unnamed rule'}: {status}{suffix}"


def format_report(result: Dict[str, Any]) -> str:
    x_ray = result.get("xRay")
    if not isinstance(x_ray, dict):
        return "No report data available."

    parts: List[str] = []
    stats = x_ray.get("statistics")
    if isinstance(stats, dict):
        parts.append(
            f"Rules: {stats.get('rulesFulfilledCount') or 0} of {stats.get('rulesActiveCount') or 0} fulfilled."
        )
    for category in x_ray.get("categories") or []:
        if not isinstance(category, dict):
            continue
        parts.append(f"\n{category.get('name') or 'Other'}:")
        rules = [r for r in category.get("rules") or [] if isinstance(r, dict)]
        if rules:
            parts.extend(_format_rule(r) for r in rules)
        else:
            parts.append("- No rules")
    text = "\n".join(parts).strip()
    return text or "No report data available."


async def run_portfolio_details(_args: NoArgs, ctx: ToolContext) -> str:
    return format_details(await ctx.backend.get_details(ctx.user_id))


async def run_portfolio_performance(args: PerformanceInput, ctx: ToolContext) -> str:
    return format_performance(await ctx.backend.get_performance(ctx.user_id, args.date_range))


async def run_portfolio_report(_args: NoArgs, ctx: ToolContext) -> str:
    return format_report(await ctx.backend.get_report(ctx.user_id))


PORTFOLIO_DETAILS = ToolSpec(
    name="portfolio_details",
    description=(
        "Get the user's portfolio summary, allocation, holdings, and accounts. Use this when the user "
        'asks about their portfolio, allocation, "how is my portfolio", or wants a summary of their investments.'
    ),
    input_model=NoArgs,
    run=run_portfolio_details,
    failure="retrieve portfolio details",
)

PORTFOLIO_PERFORMANCE = ToolSpec(
    name="portfolio_performance",
    description=(
        "Use when the user asks how their portfolio performed over a period, e.g. "
        '"How did my portfolio perform this year?", "Returns over the last 5 years", "Performance in 2024". '
        "Do not use for the current snapshot or allocation (use portfolio_details). "
        'dateRange is one of 1d, 1y, 5y, max, mtd, wtd, ytd or a year like "2024"; default max.'
    ),
    input_model=PerformanceInput,
    run=run_portfolio_performance,
    failure="retrieve portfolio performance",
)

PORTFOLIO_REPORT = ToolSpec(
    name="portfolio_report",
    description=(
        "Use when the user asks to run their portfolio report, check for rule violations, do a risk check, "
        "or see compliance/rule status. Do not use for allocation, performance, or holdings."
    ),
    input_model=NoArgs,
    run=run_portfolio_report,
    failure="retrieve portfolio report",
)
