# arbexec/filters/profit_check.py

from arbexec.filters import GuardResult
from arbexec.profit_calculator import ProfitThreshold


def profit_guard(*, result, threshold: ProfitThreshold) -> GuardResult:
    """
    result = SimulationResult (or anything with net_profit)
    netProfit >= min_profit_wei passes; equality passes.
    """

    net_profit = getattr(result, "net_profit", None)

    if net_profit is None:
        return GuardResult(
            ok=False,
            reason="No net profit available",
            details={"min_profit_wei": threshold.min_profit_wei},
        )

    details = {
        "gross_profit": getattr(result, "gross_profit", 0),
        "gas_cost": getattr(result, "gas_cost", 0),
        "protocol_fee": getattr(result, "protocol_fee", 0),
        "net_profit": net_profit,
        "min_profit_wei": threshold.min_profit_wei,
    }

    if net_profit < threshold.min_profit_wei:
        return GuardResult(
            ok=False,
            reason=(
                f"Net profit {net_profit / 1e18:.6f} ETH < "
                f"{threshold.min_profit_wei / 1e18:.6f} ETH"
            ),
            details=details,
        )

    return GuardResult(ok=True, details=details)
