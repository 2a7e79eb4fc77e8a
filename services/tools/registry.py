from __future__ import annotations

from typing import Dict, Tuple

from .activity_tools import ACTIVITIES_LIST, CASH_TRANSFER
from .base import BoundTool, ToolContext, ToolSpec
from .market_tools import MARKET_HISTORICAL
from .portfolio_tools import PORTFOLIO_DETAILS, PORTFOLIO_PERFORMANCE, PORTFOLIO_REPORT

TOOL_SPECS: Tuple[ToolSpec, ...] = (
    PORTFOLIO_DETAILS,
    PORTFOLIO_PERFORMANCE,
    PORTFOLIO_REPORT,
    ACTIVITIES_LIST,
    MARKET_HISTORICAL,
    CASH_TRANSFER,
)

TOOL_REGISTRY: Dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}


def build_tools(ctx: ToolContext) -> Dict[str, BoundTool]:
    """Tools bound to one user; name -> tool, in declaration order."""
    return {spec.name: BoundTool(spec=spec, ctx=ctx) for spec in TOOL_SPECS}

