from __future__ import annotations

"""
对账账本（services.truncate.ledger）

每个阶段前后都有一个数量断言：
- 扫描后：记录隐含的不同目标表数 == 被标记为受该类依赖阻塞的表数
- 拆除后：found == dropped
- 清空后：selected == truncated
- 重建后：dropped == recreated + abandoned

扫描、拆除、清空阶段的不一致始终致命；重建阶段在尽力模式下只记录、不中断。
"""


import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from forcetrunc.core.exceptions import ReconciliationError
from forcetrunc.services.truncate.models import DependencyKind
from forcetrunc.utils.logging_ext import EVENT_LEDGER_CHECK, EVENT_LEDGER_MISMATCH

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    found: int = 0
    dropped: int = 0
    recreated: int = 0
    abandoned: int = 0
    # 重建被配置关闭（reenable_cdc / recreate_published_articles = false）
    reconstruct_skipped: bool = False


@dataclass
class LedgerCheck:
    name: str
    kind: Optional[DependencyKind]
    expected: int
    actual: int
    fatal: bool

    @property
    def passed(self) -> bool:
        return self.expected == self.actual


@dataclass
class ReconciliationLedger:
    best_effort: bool = False
    entries: Dict[DependencyKind, LedgerEntry] = field(
        default_factory=lambda: {kind: LedgerEntry() for kind in DependencyKind}
    )
    checks: List[LedgerCheck] = field(default_factory=list)
    tables_selected: int = 0
    tables_truncated: int = 0

    def __getitem__(self, kind: DependencyKind) -> LedgerEntry:
        return self.entries[kind]

    def record_found(self, kind: DependencyKind, count: int = 1) -> None:
        self.entries[kind].found += count

    def record_dropped(self, kind: DependencyKind, count: int = 1) -> None:
        self.entries[kind].dropped += count

    def record_recreated(self, kind: DependencyKind, count: int = 1) -> None:
        self.entries[kind].recreated += count

    def record_abandoned(self, kind: DependencyKind, count: int = 1) -> None:
        self.entries[kind].abandoned += count

    def skip_reconstruct(self, kind: DependencyKind) -> None:
        self.entries[kind].reconstruct_skipped = True

    def _assert(
        self,
        name: str,
        kind: Optional[DependencyKind],
        expected: int,
        actual: int,
        message: str,
        fatal: bool = True,
    ) -> LedgerCheck:
        check = LedgerCheck(name, kind, expected, actual, fatal)
        self.checks.append(check)
        payload = {
            "check": name,
            "kind": kind.value if kind else None,
            "found": expected,
            "acted": actual,
        }
        if check.passed:
            logger.info(
                f"对账通过 [{name}]: {expected} == {actual}",
                extra={"event": EVENT_LEDGER_CHECK, "extra": payload},
            )
            return check

        if not fatal:
            logger.warning(
                f"对账不一致（尽力模式，继续执行）: {message}",
                extra={"event": EVENT_LEDGER_MISMATCH, "extra": {**payload, "fatal": False}},
            )
            return check

        logger.error(
            f"对账不一致: {message}",
            extra={"event": EVENT_LEDGER_MISMATCH, "extra": {**payload, "fatal": True}},
        )
        raise ReconciliationError(message, context=payload)

    def check_scan(self, kind: DependencyKind, implied: int, flagged: int) -> LedgerCheck:
        return self._assert(
            "scan",
            kind,
            implied,
            flagged,
            f"Number of tables referenced by {kind.label}: {implied} does not match "
            f"the number of tables flagged as referenced: {flagged}",
        )

    def check_teardown(self, kind: DependencyKind) -> LedgerCheck:
        entry = self.entries[kind]
        return self._assert(
            "teardown",
            kind,
            entry.found,
            entry.dropped,
            f"Number of {kind.label} Found: {entry.found} does not match "
            f"the Number of {kind.label} dropped: {entry.dropped}",
        )

    def check_truncate(self) -> LedgerCheck:
        return self._assert(
            "truncate",
            None,
            self.tables_selected,
            self.tables_truncated,
            f"Number of tables to be truncated: {self.tables_selected} does not match "
            f"the number of tables truncated: {self.tables_truncated}",
        )

    def check_reconstruct(self, kind: DependencyKind) -> Optional[LedgerCheck]:
        entry = self.entries[kind]
        if entry.reconstruct_skipped:
            logger.info(
                f"{kind.label} 未重建（已按配置关闭），跳过对账",
                extra={
                    "event": EVENT_LEDGER_CHECK,
                    "extra": {"check": "reconstruct", "kind": kind.value, "skipped": True},
                },
            )
            return None
        return self._assert(
            "reconstruct",
            kind,
            entry.dropped,
            entry.recreated + entry.abandoned,
            f"Number of {kind.label} dropped: {entry.dropped} does not match "
            f"the Number of {kind.label} recreated: {entry.recreated}"
            + (f" (+{entry.abandoned} abandoned)" if entry.abandoned else ""),
            fatal=not self.best_effort,
        )

    @property
    def mismatches(self) -> List[LedgerCheck]:
        return [c for c in self.checks if not c.passed]
