# core/coordinator.py
"""
Transparent proxy coordinator.

The only component with global knowledge: it sequences the engine supervisor
and the rule engine so that rules never point at a port with no listener and
are always removed before (or together with) process teardown.

One coordinator instance is built at process start and passed to callers.
It owns the single AppliedRulesRecord and the single EngineSupervisor.
"""

import logging
import threading
from typing import Optional

from core.engine_supervisor import EngineSupervisor
from core.errors import (
    BusyError,
    ProcessExitedUnexpectedly,
    RuleApplyError,
    SupervisorError,
)
from core.models import EngineConfig, ProcessExit, TransparentMode
from core.rules import RuleEngine
from core.rules.base import RuleBatch
from core.rules_state import AppliedRulesRecord, AppliedRulesStore

logger = logging.getLogger(__name__)

BUSY_QUEUE = "queue"
BUSY_REJECT = "reject"


class TransparentProxyCoordinator:
    """Serializes desired-state changes of the engine and its routing rules.

    Args:
        supervisor: Engine process supervisor.
        rule_engine: Builder/applier of OS rule batches.
        store: Optional persistence for the applied record (crash recovery).
        busy_policy: ``"queue"`` waits for the in-flight request,
            ``"reject"`` fails immediately with BusyError.
        queue_timeout: Max seconds to wait in ``"queue"`` mode (None = forever).
    """

    def __init__(self, supervisor: EngineSupervisor, rule_engine: RuleEngine,
                 store: Optional[AppliedRulesStore] = None,
                 busy_policy: str = BUSY_QUEUE,
                 queue_timeout: Optional[float] = None):
        if busy_policy not in (BUSY_QUEUE, BUSY_REJECT):
            raise ValueError(f"Unknown busy policy: {busy_policy}")

        self.supervisor = supervisor
        self.rule_engine = rule_engine
        self.store = store
        self.busy_policy = busy_policy
        self.queue_timeout = queue_timeout

        self._lock = threading.Lock()
        self._applied: Optional[AppliedRulesRecord] = None
        self.mode = TransparentMode.DISABLED
        self.last_error: Optional[SupervisorError] = None

        self.supervisor.set_exit_callback(self._on_engine_exit)

    @property
    def applied(self) -> Optional[AppliedRulesRecord]:
        return self._applied

    def _acquire(self):
        if self.busy_policy == BUSY_REJECT:
            acquired = self._lock.acquire(blocking=False)
        else:
            timeout = -1 if self.queue_timeout is None else self.queue_timeout
            acquired = self._lock.acquire(timeout=timeout)

        if not acquired:
            raise BusyError(
                "Уже выполняется другой запрос на смену состояния прокси",
                "Повторите попытку после завершения текущей операции",
            )

    def set_desired_state(self, config: Optional[EngineConfig],
                          mode=TransparentMode.DISABLED) -> None:
        """Apply the desired engine config and transparent mode.

        ``config=None`` is a disable-only request: rules are removed and the
        engine is stopped.

        Raises:
            BusyError: another request is in flight (per busy policy).
            ProcessStartError: the engine did not start; no rules applied.
            RuleApplyError: rules failed; they were cleaned and the engine
                stopped before raising.
            PlatformUnsupportedError: the mode has no backend here; the
                engine was stopped.
        """
        mode = TransparentMode.parse(mode)
        self._acquire()
        try:
            self._apply_desired_state(config, mode)
        finally:
            self._lock.release()

    def shutdown(self) -> None:
        """Remove rules and stop the engine; waits for any in-flight request."""
        with self._lock:
            logger.info("🛑 Завершение: снимаем правила и останавливаем движок")
            self._apply_desired_state(None, TransparentMode.DISABLED)

    def _apply_desired_state(self, config: Optional[EngineConfig], mode: TransparentMode):
        # Шаг 1: старые правила снимаем всегда, ошибки очистки не блокируют работу
        self._clean_applied()

        # Шаг 2: запрос только на выключение
        if config is None:
            if mode != TransparentMode.DISABLED:
                logger.warning(f"⚠️ Режим {mode.value} запрошен без конфига движка, выключаем")
            self.supervisor.stop()
            self.mode = TransparentMode.DISABLED
            self.last_error = None
            return

        # Шаг 3: новый конфиг - новый процесс
        if self.supervisor.current_config != config or not self.supervisor.is_running:
            self.supervisor.stop()

        # Шаг 4
        if not self.supervisor.is_running:
            self.mode = TransparentMode.DISABLED
            try:
                self.supervisor.start(config)
            except SupervisorError as e:
                self.last_error = e
                raise

        if mode == TransparentMode.DISABLED:
            self.mode = mode
            self.last_error = None
            return

        # Шаг 5: правила - только на уже слушающие порты
        generation = self.supervisor.generation
        engine_pid = self.supervisor.pid
        try:
            batch = self.rule_engine.build_batch(mode, config.ports)
        except SupervisorError as e:
            logger.error(f"❌ Не удалось построить правила {mode.value}: {e.message}")
            self.supervisor.stop()
            self.last_error = e
            raise

        try:
            self.rule_engine.apply(batch)
        except RuleApplyError as e:
            self._remediate(batch)
            self.last_error = e
            raise

        # Шаг 6
        self._set_record(AppliedRulesRecord(batch=batch, generation=generation, engine_pid=engine_pid))
        self.mode = mode
        self.last_error = None
        logger.info(f"✅ Прозрачный прокси включен: {mode.value}, порты {list(config.ports.all_ports())}")

    def _remediate(self, batch: RuleBatch):
        """Частично примененный пакет: чистим и останавливаем движок"""
        logger.warning(f"🧹 Откатываем частично примененные правила {batch.mode.value}")
        try:
            self.rule_engine.clean(batch)
        except SupervisorError as e:
            logger.error(f"❌ Откат правил {batch.mode.value} прошел с ошибками: {e}")
        self.supervisor.stop()
        self.mode = TransparentMode.DISABLED

    def _clean_applied(self):
        record = self._applied
        if record is None:
            return
        try:
            self.rule_engine.clean(record.batch)
        except SupervisorError as e:
            logger.error(f"❌ Правила {record.batch.mode.value} удалены с ошибками: {e}")
        finally:
            # Запись очищаем в любом случае, иначе сломанное правило заблокирует все следующие попытки
            self._set_record(None)

    def _set_record(self, record: Optional[AppliedRulesRecord]):
        self._applied = record
        if self.store is None:
            return
        if record is None:
            self.store.clear()
        else:
            self.store.save(record)

    # --- Неожиданное завершение движка ---

    def _on_engine_exit(self, exit_info: ProcessExit):
        """Вызывается из потока-наблюдателя супервизора"""
        thread = threading.Thread(
            target=self._handle_engine_crash,
            args=(exit_info,),
            name=f"rules-crash-cleanup-{exit_info.pid}",
            daemon=True,
        )
        thread.start()

    def _handle_engine_crash(self, exit_info: ProcessExit):
        error = ProcessExitedUnexpectedly(
            f"Движок неожиданно завершился (код {exit_info.returncode})",
            exit_info.output_tail,
            returncode=exit_info.returncode,
        )

        with self._lock:
            if self.supervisor.generation in (None, exit_info.generation):
                self.last_error = error

            record = self._applied
            if record is None or record.generation != exit_info.generation:
                return

            logger.warning(f"🧹 Движок упал, снимаем правила {record.batch.mode.value}")
            self.mode = TransparentMode.DISABLED
            self._clean_applied()

    # --- Восстановление после аварийного завершения демона ---

    def recover(self, clean_leftovers: bool = True) -> None:
        """Снимает правила, оставшиеся от предыдущего запуска"""
        with self._lock:
            record = self.store.load() if self.store is not None else None
            if record is not None:
                logger.warning(f"⚠️ Найдены правила {record.batch.mode.value} от предыдущего запуска, удаляем")
                try:
                    self.rule_engine.clean(record.batch)
                except SupervisorError as e:
                    logger.error(f"❌ Старые правила удалены с ошибками: {e}")
                finally:
                    self.store.clear()

            if clean_leftovers:
                self.rule_engine.clean_leftovers()

    # --- Статус ---

    def get_status(self) -> dict:
        status = self.supervisor.get_status()
        record = self._applied
        status['mode'] = self.mode.value
        status['applied'] = None
        if record is not None:
            status['applied'] = {
                'mode': record.batch.mode.value,
                'platform': record.batch.platform.value,
                'ports': record.batch.ports.to_dict(),
                'engine_pid': record.engine_pid,
                'applied_at': record.applied_at,
            }
        status['last_error'] = self.last_error.to_dict() if self.last_error else None
        return status
