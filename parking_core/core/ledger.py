"""
Cash register ledger.

A register's current_balance moves only together with a CashFlow row of the
identical amount, in the same transaction. Money events call
record_deposit/record_withdrawal from inside their own unit of work; shift
operations (open, adjust, close) run their own.
"""
from enum import Enum
from typing import List, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.config import MissingRegisterPolicy, Settings
from parking_core.database.models import CashFlow, CashRegister, Transaction
from parking_core.database.types import Clock, utcnow
from parking_core.domain.errors import BusinessLogicError, ErrorCode, ValidationError
from parking_core.domain.money import Money, MoneyInput
from parking_core.domain.records import RegisterSummary, RegisterVerification
from parking_core.monitoring.logging import audit_log
from parking_core.monitoring.metrics import metrics

from .executor import AtomicExecutor

logger = structlog.get_logger(__name__)


class RegisterStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    RECONCILING = "RECONCILING"
    SUSPENDED = "SUSPENDED"


class CashFlowType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    ADJUSTMENT = "ADJUSTMENT"
    OPENING_BALANCE = "OPENING_BALANCE"
    CLOSING_BALANCE = "CLOSING_BALANCE"


def signed_amount(flow: CashFlow) -> Money:
    """Contribution of a flow to the register balance."""
    if flow.type == CashFlowType.DEPOSIT.value:
        return flow.amount
    if flow.type == CashFlowType.WITHDRAWAL.value:
        return -flow.amount
    if flow.type == CashFlowType.ADJUSTMENT.value:
        return flow.amount
    # OPENING_BALANCE / CLOSING_BALANCE are informational
    return Money.zero()


def derived_balance(register: CashRegister, flows: Sequence[CashFlow]) -> Money:
    return register.opening_balance + Money.sum(signed_amount(f) for f in flows)


def summarize(register: CashRegister, flow_count: int = 0) -> RegisterSummary:
    return RegisterSummary(
        register_id=register.id,
        operator_id=register.operator_id,
        status=register.status,
        opening_balance=register.opening_balance,
        current_balance=register.current_balance,
        expected_balance=register.expected_balance,
        counted_balance=register.counted_balance,
        discrepancy=register.discrepancy,
        shift_start=register.shift_start,
        shift_end=register.shift_end,
        flow_count=flow_count,
    )


def _amount(amount: MoneyInput, field: str) -> Money:
    try:
        money = Money.coerce(amount)
    except ValueError as e:
        raise ValidationError(f"Invalid {field}", context={"field": field}) from e
    if not money.is_centavo_exact():
        raise ValidationError(f"{field} has more than two decimals", context={field: money})
    return money


def _positive(amount: MoneyInput, field: str) -> Money:
    money = _amount(amount, field)
    if not money.is_positive():
        raise ValidationError(f"{field} must be positive", context={field: money})
    return money


class CashLedger:
    """Per-operator cash registers and their append-only cash flows."""

    def __init__(self, executor: AtomicExecutor, settings: Settings, clock: Clock = utcnow):
        self.executor = executor
        self.settings = settings
        self.clock = clock

    # Queries used inside other units of work

    async def find_open_register(
        self, session: AsyncSession, operator_id: str
    ) -> CashRegister | None:
        """
        Locate the operator's OPEN register, locking its row.

        FOR UPDATE is a no-op on SQLite, where BEGIN IMMEDIATE already holds
        the write lock.
        """
        stmt = (
            select(CashRegister)
            .where(CashRegister.operator_id == operator_id)
            .where(CashRegister.status == RegisterStatus.OPEN.value)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _flows(self, session: AsyncSession, register_id: str) -> List[CashFlow]:
        stmt = (
            select(CashFlow)
            .where(CashFlow.cash_register_id == register_id)
            .order_by(CashFlow.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _flow_count(self, session: AsyncSession, register_id: str) -> int:
        stmt = select(func.count(CashFlow.id)).where(CashFlow.cash_register_id == register_id)
        return int((await session.execute(stmt)).scalar_one())

    # Money events

    async def record_deposit(
        self,
        session: AsyncSession,
        operator_id: str,
        amount: Money,
        reason: str,
        transaction: Transaction | None = None,
    ) -> CashRegister | None:
        """
        Book cash taken by a money event.

        Must be called inside the event's unit of work. The ledger
        transaction, when given, is linked to the register before insert.

        Returns:
            CashRegister | None: The register credited, or None when the
            payment was accepted under the flag policy without one

        Raises:
            BusinessLogicError: NO_OPEN_CASH_REGISTER under the reject policy
        """
        return await self._post(
            session, operator_id, amount, reason, transaction, CashFlowType.DEPOSIT
        )

    async def record_withdrawal(
        self,
        session: AsyncSession,
        operator_id: str,
        amount: Money,
        reason: str,
        transaction: Transaction | None = None,
    ) -> CashRegister | None:
        """
        Book cash handed out (refunds).

        Raises:
            BusinessLogicError: NO_OPEN_CASH_REGISTER, or INSUFFICIENT_FUNDS
            when the drawer holds less than amount
        """
        return await self._post(
            session, operator_id, amount, reason, transaction, CashFlowType.WITHDRAWAL
        )

    async def _post(
        self,
        session: AsyncSession,
        operator_id: str,
        amount: Money,
        reason: str,
        transaction: Transaction | None,
        flow_type: CashFlowType,
    ) -> CashRegister | None:
        register = await self.find_open_register(session, operator_id)

        if register is None:
            if self.settings.missing_register_policy is MissingRegisterPolicy.REJECT:
                raise BusinessLogicError(
                    ErrorCode.NO_OPEN_CASH_REGISTER,
                    "Operator has no open cash register",
                    {"operator_id": operator_id},
                )
            logger.warning(
                "payment_without_open_register",
                operator_id=operator_id,
                amount=str(amount),
                flow_type=flow_type.value,
            )
            metrics.record_unreconciled_payment()
            if transaction is not None:
                transaction.needs_reconciliation = True
                session.add(transaction)
                await session.flush()
            return None

        if flow_type is CashFlowType.WITHDRAWAL:
            if amount > register.current_balance:
                raise BusinessLogicError(
                    ErrorCode.INSUFFICIENT_FUNDS,
                    "Not enough cash in the register",
                    {
                        "register_id": register.id,
                        "current_balance": register.current_balance,
                        "requested": amount,
                    },
                )
            register.current_balance = register.current_balance - amount
        else:
            register.current_balance = register.current_balance + amount

        if transaction is not None:
            transaction.cash_register_id = register.id
            session.add(transaction)
            await session.flush()

        session.add(
            CashFlow(
                cash_register_id=register.id,
                type=flow_type.value,
                amount=amount,
                reason=reason,
                performed_by=operator_id,
                transaction_id=transaction.id if transaction is not None else None,
                timestamp=self.clock(),
            )
        )
        await session.flush()
        return register

    # Shift operations

    async def open_register(self, operator_id: str, opening_balance: MoneyInput) -> RegisterSummary:
        """
        Open a shift register.

        Raises:
            BusinessLogicError: REGISTER_ALREADY_OPEN
        """
        opening = _amount(opening_balance, "opening_balance")
        if opening.is_negative():
            raise ValidationError("Opening balance must be a non-negative peso amount")

        async def _open(session: AsyncSession) -> RegisterSummary:
            if await self.find_open_register(session, operator_id) is not None:
                raise BusinessLogicError(
                    ErrorCode.REGISTER_ALREADY_OPEN,
                    "Operator already has an open cash register",
                    {"operator_id": operator_id},
                )
            now = self.clock()
            register = CashRegister(
                operator_id=operator_id,
                status=RegisterStatus.OPEN.value,
                opening_balance=opening,
                current_balance=opening,
                shift_start=now,
            )
            session.add(register)
            await session.flush()
            session.add(
                CashFlow(
                    cash_register_id=register.id,
                    type=CashFlowType.OPENING_BALANCE.value,
                    amount=opening,
                    reason="Apertura de caja",
                    performed_by=operator_id,
                    timestamp=now,
                )
            )
            return summarize(register, flow_count=1)

        summary = await self.executor.run(_open, operation="open_register")
        logger.info(
            "cash_register_opened",
            register_id=summary.register_id,
            operator_id=operator_id,
            opening_balance=str(opening),
        )
        audit_log(
            "cash_register_opened",
            operator_id,
            register_id=summary.register_id,
            opening_balance=opening.to_database(),
        )
        return summary

    async def make_adjustment(
        self,
        operator_id: str,
        kind: CashFlowType | str,
        amount: MoneyInput,
        reason: str,
    ) -> RegisterSummary:
        """
        Manual drawer movement.

        DEPOSIT and WITHDRAWAL take a positive amount; ADJUSTMENT takes a
        signed correction.

        Raises:
            BusinessLogicError: NO_OPEN_CASH_REGISTER, INSUFFICIENT_FUNDS
        """
        kind = CashFlowType(kind)
        if kind not in (CashFlowType.DEPOSIT, CashFlowType.WITHDRAWAL, CashFlowType.ADJUSTMENT):
            raise ValidationError(f"{kind.value} is not a manual movement")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for manual movements")

        if kind is CashFlowType.ADJUSTMENT:
            value = _amount(amount, "amount")
            if value.is_zero():
                raise ValidationError("Adjustment must be a non-zero peso amount")
        else:
            value = _positive(amount, "amount")

        async def _adjust(session: AsyncSession) -> RegisterSummary:
            register = await self.find_open_register(session, operator_id)
            if register is None:
                raise BusinessLogicError(
                    ErrorCode.NO_OPEN_CASH_REGISTER,
                    "Operator has no open cash register",
                    {"operator_id": operator_id},
                )
            delta = -value if kind is CashFlowType.WITHDRAWAL else value
            new_balance = register.current_balance + delta
            if new_balance.is_negative():
                raise BusinessLogicError(
                    ErrorCode.INSUFFICIENT_FUNDS,
                    "Not enough cash in the register",
                    {"current_balance": register.current_balance, "requested": abs(delta)},
                )
            register.current_balance = new_balance
            session.add(
                CashFlow(
                    cash_register_id=register.id,
                    type=kind.value,
                    amount=value,
                    reason=reason.strip(),
                    performed_by=operator_id,
                    timestamp=self.clock(),
                )
            )
            await session.flush()
            return summarize(register, await self._flow_count(session, register.id))

        summary = await self.executor.run(_adjust, operation="register_adjustment")
        audit_log(
            "cash_register_adjusted",
            operator_id,
            register_id=summary.register_id,
            kind=kind.value,
            amount=value.to_database(),
            reason=reason,
        )
        return summary

    async def close_register(
        self, operator_id: str, counted_balance: MoneyInput, notes: str | None = None
    ) -> RegisterSummary:
        """
        Close the shift against a physical count.

        discrepancy = counted - expected, where expected is derived from the
        flows. Balanced registers go to CLOSED, others to RECONCILING. Balances
        are not changed.

        Raises:
            BusinessLogicError: NO_OPEN_CASH_REGISTER
        """
        counted = _amount(counted_balance, "counted_balance")
        if counted.is_negative():
            raise ValidationError("Counted balance must be a non-negative peso amount")

        async def _close(session: AsyncSession) -> RegisterSummary:
            register = await self.find_open_register(session, operator_id)
            if register is None:
                raise BusinessLogicError(
                    ErrorCode.NO_OPEN_CASH_REGISTER,
                    "Operator has no open cash register",
                    {"operator_id": operator_id},
                )
            flows = await self._flows(session, register.id)
            expected = derived_balance(register, flows)
            discrepancy = counted - expected
            now = self.clock()

            register.expected_balance = expected
            register.counted_balance = counted
            register.discrepancy = discrepancy
            register.shift_end = now
            register.notes = notes
            register.status = (
                RegisterStatus.CLOSED.value
                if discrepancy.is_zero()
                else RegisterStatus.RECONCILING.value
            )
            session.add(
                CashFlow(
                    cash_register_id=register.id,
                    type=CashFlowType.CLOSING_BALANCE.value,
                    amount=counted,
                    reason="Cierre de caja",
                    performed_by=operator_id,
                    timestamp=now,
                )
            )
            await session.flush()
            return summarize(register, flow_count=len(flows) + 1)

        summary = await self.executor.run(_close, operation="close_register")
        metrics.record_register_closed(summary.status)
        log = logger.warning if summary.status == RegisterStatus.RECONCILING.value else logger.info
        log(
            "cash_register_closed",
            register_id=summary.register_id,
            operator_id=operator_id,
            status=summary.status,
            expected=str(summary.expected_balance),
            counted=str(counted),
            discrepancy=str(summary.discrepancy),
        )
        audit_log(
            "cash_register_closed",
            operator_id,
            register_id=summary.register_id,
            status=summary.status,
            discrepancy=summary.discrepancy.to_database(),
        )
        return summary

    async def verify_register(self, register_id: str) -> RegisterVerification:
        """Recompute the balance invariant for one register."""

        async def _verify(session: AsyncSession) -> RegisterVerification:
            register = await session.get(CashRegister, register_id)
            if register is None:
                raise BusinessLogicError(
                    ErrorCode.CASH_REGISTER_NOT_FOUND,
                    "Cash register not found",
                    {"register_id": register_id},
                )
            derived = derived_balance(register, await self._flows(session, register_id))
            return RegisterVerification(
                register_id=register_id,
                stored_balance=register.current_balance,
                derived_balance=derived,
                drift=register.current_balance - derived,
            )

        verification = await self.executor.read(_verify)
        if not verification.consistent:
            logger.error(
                "cash_register_drift_detected",
                register_id=register_id,
                stored=str(verification.stored_balance),
                derived=str(verification.derived_balance),
            )
        return verification

    async def get_status(self, operator_id: str) -> RegisterSummary:
        """
        Raises:
            BusinessLogicError: NO_OPEN_CASH_REGISTER
        """

        async def _status(session: AsyncSession) -> RegisterSummary:
            register = await self.find_open_register(session, operator_id)
            if register is None:
                raise BusinessLogicError(
                    ErrorCode.NO_OPEN_CASH_REGISTER,
                    "Operator has no open cash register",
                    {"operator_id": operator_id},
                )
            return summarize(register, await self._flow_count(session, register.id))

        return await self.executor.read(_status)

    async def list_flows(self, register_id: str) -> List[CashFlow]:
        return await self.executor.read(lambda session: self._flows(session, register_id))

