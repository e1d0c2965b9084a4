# core/startup_manager.py
import logging
from pathlib import Path
from typing import Optional, Tuple

from core.config_manager import ConfigManager
from core.coordinator import TransparentProxyCoordinator
from core.engine_supervisor import EngineSupervisor, resolve_binary
from core.models import EngineConfig, PortSet, TransparentMode
from core.readiness import readiness_from_config
from core.rules import RuleEngine, RuleOptions
from core.rules_state import AppliedRulesStore
from utils.command_executor import CommandExecutor
from utils.process_manager import ProcessManager

logger = logging.getLogger(__name__)

APPLIED_RULES_FILE = "applied_rules.json"


def build_supervisor(config: ConfigManager, process_manager: ProcessManager) -> EngineSupervisor:
    engine = config.get_engine_config()
    return EngineSupervisor(
        binary=engine.get('binary') or 'v2ray',
        args=engine.get('args') or ('run', '-c', '{config}'),
        readiness=readiness_from_config(engine),
        startup_timeout=float(engine.get('startup_timeout', 10.0)),
        stop_timeout=float(engine.get('stop_timeout', 5.0)),
        kill_timeout=float(engine.get('kill_timeout', 3.0)),
        check_ports=bool(engine.get('check_ports', True)),
        process_manager=process_manager,
    )


def build_rule_engine(config: ConfigManager, process_manager: ProcessManager) -> RuleEngine:
    executor = CommandExecutor(timeout=float(config.get('commands.timeout', 10.0)))
    return RuleEngine(
        executor,
        options=RuleOptions.from_config(config.get_transparent_config()),
        process_manager=process_manager,
    )


def build_coordinator(config: ConfigManager,
                      process_manager: Optional[ProcessManager] = None) -> TransparentProxyCoordinator:
    """Собирает координатор и его зависимости по config.json"""
    process_manager = process_manager or ProcessManager()
    coordinator_config = config.get_coordinator_config()
    return TransparentProxyCoordinator(
        supervisor=build_supervisor(config, process_manager),
        rule_engine=build_rule_engine(config, process_manager),
        store=AppliedRulesStore(Path(config.config_path).parent / APPLIED_RULES_FILE),
        busy_policy=coordinator_config.get('busy_policy') or 'queue',
        queue_timeout=coordinator_config.get('queue_timeout'),
    )


def load_desired_state(config: ConfigManager) -> Tuple[Optional[EngineConfig], TransparentMode]:
    """Желаемое состояние из настроек: конфиг движка и режим"""
    engine = config.get_engine_config()
    transparent = config.get_transparent_config()

    engine_config = None
    if engine.get('config_path'):
        engine_config = EngineConfig.from_file(
            engine['config_path'],
            PortSet.from_dict(engine.get('ports')),
        )

    mode = TransparentMode.DISABLED
    if transparent.get('enabled'):
        mode = TransparentMode.parse(transparent.get('mode'))
    return engine_config, mode


class StartupManager:
    """Инициализация приложения: компоненты, старые процессы, старые правила"""

    def __init__(self, config: ConfigManager):
        self.config = config
        self.process_manager = ProcessManager()
        self.coordinator: Optional[TransparentProxyCoordinator] = None

    def run(self) -> TransparentProxyCoordinator:
        logger.info("📋 Начало инициализации")

        # Шаг 1: права
        if not self.process_manager.is_admin:
            logger.warning("⚠️ Нет прав root: режимы redirect, tproxy и tun будут недоступны")

        # Шаг 2: компоненты
        self.coordinator = build_coordinator(self.config, self.process_manager)
        platform = self.coordinator.rule_engine.platform
        modes = [m.value for m in self.coordinator.rule_engine.supported_modes()]
        logger.info(f"✅ Платформа: {platform.value if platform else 'неизвестна'}, режимы: {modes}")

        # Шаг 3: процессы движка от предыдущего запуска
        binary_path = resolve_binary(self.config.get('engine.binary', 'v2ray'))
        if binary_path:
            record = self.coordinator.store.load() if self.coordinator.store else None
            known_pids = [record.engine_pid] if record and record.engine_pid else []
            terminated = self.process_manager.terminate_stale_engines(
                binary_path,
                known_pids=known_pids,
                config_path=self.config.get('engine.config_path') or None,
            )
            if terminated:
                logger.info(f"✅ Завершено старых процессов движка: {terminated}")
        else:
            logger.warning(f"⚠️ Бинарник движка не найден: {self.config.get('engine.binary')}")

        # Шаг 4: правила от предыдущего запуска
        self.coordinator.recover(
            clean_leftovers=bool(self.config.get('coordinator.clean_leftovers_on_start', True)),
        )

        logger.info("✅ Инициализация завершена успешно")
        return self.coordinator
