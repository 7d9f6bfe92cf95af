"""
DS Router - Errors

Every failure aborts and unwinds the whole trade. Exceptions are grouped by
category so callers can tell an infeasible trade (numerical), a trade that
may succeed when smaller (liquidity), misuse (policy) and a price guard
(slippage) apart.
"""


class RouterError(Exception):
    """Base class for all router failures."""

    code = "router_error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(f"{self.code}: {self.message}")


# ═══════════════════════════════════════════════════════════════════════════════
# NUMERICAL - trade infeasible at current reserves, never retried
# ═══════════════════════════════════════════════════════════════════════════════

class NumericalError(RouterError):
    code = "numerical_error"


class NoBracket(NumericalError):
    code = "no_bracket"


class NoConvergence(NumericalError):
    code = "no_convergence"


class InvalidDomain(NumericalError):
    code = "invalid_domain"


class DivisionByZero(NumericalError):
    code = "division_by_zero"


class InvalidDecay(NumericalError):
    code = "invalid_decay"


# ═══════════════════════════════════════════════════════════════════════════════
# LIQUIDITY - caller may retry with a smaller amount
# ═══════════════════════════════════════════════════════════════════════════════

class LiquidityError(RouterError):
    code = "liquidity_error"


class InsufficientLiquidity(LiquidityError):
    code = "insufficient_liquidity"


# ═══════════════════════════════════════════════════════════════════════════════
# POLICY / AUTHORIZATION - misuse, never retried
# ═══════════════════════════════════════════════════════════════════════════════

class PolicyError(RouterError):
    code = "policy_error"


class InvalidSignature(PolicyError):
    code = "invalid_signature"


class PermitNotSupported(PolicyError):
    code = "permit_not_supported"


class CallbackOriginMismatch(PolicyError):
    code = "callback_origin_mismatch"


# ═══════════════════════════════════════════════════════════════════════════════
# SLIPPAGE - caller may adjust min_out
# ═══════════════════════════════════════════════════════════════════════════════

class SlippageError(RouterError):
    code = "slippage_error"


class InsufficientOutput(SlippageError):
    code = "insufficient_output"

    def __init__(self, amount_out: int, min_out: int):
        self.amount_out = amount_out
        self.min_out = min_out
        super().__init__(f"realized {amount_out} < minimum {min_out}")


# ═══════════════════════════════════════════════════════════════════════════════
# CUSTODY
# ═══════════════════════════════════════════════════════════════════════════════

class CustodyError(RouterError):
    code = "custody_error"


class TransferFailed(CustodyError):
    code = "transfer_failed"
