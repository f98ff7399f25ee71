"""
历史实际数存储
同比校验只读取已锁定的决算（FINAL）数；持久化由调用方实现同名协议。
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from schemas.facts import HistoricalActual, ReportStage

logger = logging.getLogger(__name__)

Identity = Tuple[str, int, str, str]


class HistoryLockedError(Exception):
    """已锁定的历史实际数不可直接覆盖"""

    def __init__(self, actual: HistoricalActual):
        self.actual = actual
        super().__init__(
            f"History actual is locked: unit={actual.unit_id} year={actual.year} "
            f"stage={actual.stage.value} key={actual.key}"
        )


class HistoryActualsRepository(Protocol):
    """历史实际数仓储协议"""

    def get_locked_final_values(self, unit_id: str, year: int, keys: Iterable[str]) -> Dict[str, Optional[float]]:
        ...

    def upsert(self, actual: HistoricalActual) -> HistoricalActual:
        ...

    def lock(self, unit_id: str, year: int, stage: ReportStage = ReportStage.FINAL) -> int:
        ...


class InMemoryHistoryActualsRepository:
    """进程内实现，(unit, year, stage, key) 唯一"""

    def __init__(self, actuals: Optional[Iterable[HistoricalActual]] = None):
        self._records: Dict[Identity, HistoricalActual] = {}
        self._lock = threading.Lock()
        for actual in actuals or []:
            self.upsert(actual)

    def upsert(self, actual: HistoricalActual) -> HistoricalActual:
        with self._lock:
            existing = self._records.get(actual.identity)
            if existing is not None and existing.is_locked:
                raise HistoryLockedError(existing)
            self._records[actual.identity] = actual
        return actual

    def lock(self, unit_id: str, year: int, stage: ReportStage = ReportStage.FINAL) -> int:
        """锁定某单位某年度某阶段的全部记录，返回锁定条数"""
        locked = 0
        with self._lock:
            for identity, actual in self._records.items():
                if actual.unit_id == unit_id and actual.year == year and actual.stage == stage and not actual.is_locked:
                    self._records[identity] = actual.model_copy(update={"is_locked": True})
                    locked += 1
        logger.info(f"历史实际数已锁定: unit={unit_id} year={year} stage={stage.value} count={locked}")
        return locked

    def get(self, unit_id: str, year: int, key: str, stage: ReportStage = ReportStage.FINAL) -> Optional[HistoricalActual]:
        return self._records.get((unit_id, year, stage.value, key))

    def get_locked_final_values(self, unit_id: str, year: int, keys: Iterable[str]) -> Dict[str, Optional[float]]:
        values = {}
        for key in keys:
            actual = self.get(unit_id, year, key, ReportStage.FINAL)
            if actual is not None and actual.is_locked:
                values[key] = actual.value_numeric
        return values

    def all(self) -> List[HistoricalActual]:
        return list(self._records.values())
