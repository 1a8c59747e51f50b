# arbexec/filters/gas_check.py

from arbexec.filters import GuardResult
from arbexec.profit_calculator import GasPriceConfig


def gas_budget_guard(gas: GasPriceConfig) -> GuardResult:
    """
    Effective price = base fee + priority fee; must not exceed the ceiling
    Checked before any replica is spawned.
    """

    effective = gas.gas_price
    details = {
        "base_fee": gas.base_fee,
        "priority_fee": gas.priority_fee,
        "gas_price": effective,
        "max_gas_price": gas.max_gas_price,
    }

    if effective > gas.max_gas_price:
        return GuardResult(
            ok=False,
            reason=(
                f"Gas price {effective / 1e9:.2f} gwei exceeds max "
                f"{gas.max_gas_price / 1e9:.2f} gwei"
            ),
            details=details,
        )

    return GuardResult(ok=True, details=details)
