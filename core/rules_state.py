# core/rules_state.py
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from core.rules.base import RuleBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedRulesRecord:
    """Какой пакет правил сейчас применен и для какого процесса движка"""
    batch: RuleBatch
    generation: Optional[int] = None
    engine_pid: Optional[int] = None
    applied_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            'batch': self.batch.to_dict(),
            'generation': self.generation,
            'engine_pid': self.engine_pid,
            'applied_at': self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AppliedRulesRecord":
        return cls(
            batch=RuleBatch.from_dict(data['batch']),
            generation=data.get('generation'),
            engine_pid=data.get('engine_pid'),
            applied_at=data.get('applied_at') or time.time(),
        )


class AppliedRulesStore:
    """
    Файл с примененными правилами.

    Переживает аварийное завершение демона: при следующем запуске
    правила удаляются по сохраненному пакету (включая снятый маршрут tun).
    """

    def __init__(self, path):
        self.path = Path(path)

    def save(self, record: AppliedRulesRecord) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
            logger.debug(f"Состояние правил сохранено: {self.path}")
            return True
        except OSError as e:
            logger.error(f"❌ Не удалось сохранить состояние правил: {e}")
            return False

    def load(self) -> Optional[AppliedRulesRecord]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return AppliedRulesRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"❌ Файл состояния правил поврежден ({self.path}): {e}")
            return None

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"❌ Не удалось удалить файл состояния правил: {e}")
