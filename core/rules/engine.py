# core/rules/engine.py
import logging
import platform as platform_module
from typing import List, Optional

from core.errors import PlatformUnsupportedError, RuleApplyError, RuleCleanupError
from core.models import Platform, PortSet, TransparentMode
from core.rules.base import RuleBatch, RuleOptions
from core.rules.netfilter import NetfilterRedirect, NetfilterTProxy
from core.rules.system_proxy import GnomeSystemProxy, NetworkSetupSystemProxy, WindowsSystemProxy
from core.rules.tun import LinuxTun
from utils.command_executor import CommandExecutor

logger = logging.getLogger(__name__)

# Выбор реализации - поиск по таблице (режим, платформа)
BACKENDS = {
    (TransparentMode.REDIRECT, Platform.LINUX): NetfilterRedirect,
    (TransparentMode.TPROXY, Platform.LINUX): NetfilterTProxy,
    (TransparentMode.TUN, Platform.LINUX): LinuxTun,
    (TransparentMode.SYSTEM_PROXY, Platform.LINUX): GnomeSystemProxy,
    (TransparentMode.SYSTEM_PROXY, Platform.DARWIN): NetworkSetupSystemProxy,
    (TransparentMode.SYSTEM_PROXY, Platform.WINDOWS): WindowsSystemProxy,
}


def detect_platform() -> Optional[Platform]:
    """Определяет платформу по platform.system(); None для неизвестных ОС"""
    system = platform_module.system().lower()
    try:
        return Platform(system)
    except ValueError:
        logger.warning(f"⚠️ Неизвестная платформа: {system}")
        return None


class RuleEngine:
    """
    Строит и применяет пакеты правил для режимов прозрачного прокси.

    Сам ничего не меняет в системе: только формирует RuleBatch и
    прогоняет его через CommandExecutor.
    """

    def __init__(self, executor: CommandExecutor, platform: Optional[Platform] = None,
                 options: Optional[RuleOptions] = None, process_manager=None):
        self.executor = executor
        self.platform = platform or detect_platform()
        self.options = options or RuleOptions()
        self.process_manager = process_manager

    def supported_modes(self, platform: Optional[Platform] = None) -> List[TransparentMode]:
        platform = platform or self.platform
        return [mode for (mode, plat) in BACKENDS if plat == platform]

    def _backend(self, mode: TransparentMode, platform: Optional[Platform]):
        backend_class = BACKENDS.get((mode, platform))
        if backend_class is None:
            raise PlatformUnsupportedError(mode, platform or platform_module.system())
        return backend_class(self.options)

    def build_batch(self, mode: TransparentMode, ports: PortSet,
                    platform: Optional[Platform] = None) -> RuleBatch:
        """Строит setup и cleanup для режима; снимает нужные значения с системы"""
        platform = platform or self.platform
        backend = self._backend(mode, platform)

        captured = backend.capture(self.executor, ports)
        setup = backend.build_setup(ports, captured)
        cleanup = backend.build_cleanup(ports, captured, self.executor)

        logger.debug(f"Пакет {mode.value}/{platform.value}: {len(setup)} шагов setup, {len(cleanup)} шагов cleanup")
        return RuleBatch(
            mode=mode,
            platform=platform,
            ports=ports,
            setup=tuple(setup),
            cleanup=tuple(cleanup),
            captured=captured,
        )

    def _privilege_hint(self, backend) -> str:
        if not getattr(backend, 'requires_admin', False) or self.process_manager is None:
            return ""
        if self.process_manager.is_admin:
            return ""
        return "\nЗапустите приложение с правами root (администратора)"

    def apply(self, batch: RuleBatch) -> None:
        """Применяет setup; при первой ошибке останавливается и бросает RuleApplyError"""
        backend = self._backend(batch.mode, batch.platform)
        logger.info(f"🔧 Применяем правила {batch.mode.value} ({len(batch.setup)} шагов)")

        result = self.executor.run_batch(batch.setup, stop_on_error=True)
        if result.failed is not None:
            step, command_result = result.failed
            applied = [s.display for s in result.succeeded]
            logger.error(f"❌ Правила {batch.mode.value} не применены на шаге: {step.display}")
            raise RuleApplyError(
                f"Не удалось применить правила {batch.mode.value}: {step.display}",
                command_result.diagnostic + self._privilege_hint(backend),
                command=command_result.argv,
                applied=applied,
            )

        logger.info(f"✅ Правила {batch.mode.value} применены")

    def clean(self, batch: RuleBatch) -> None:
        """Выполняет все шаги cleanup, ошибки собирает и отдает одним RuleCleanupError"""
        backend = self._backend(batch.mode, batch.platform)
        steps = batch.cleanup
        failures = []
        if backend.reenumerate_on_cleanup:
            try:
                steps = tuple(backend.build_cleanup(batch.ports, batch.captured, self.executor))
            except RuleApplyError as e:
                # Не смогли заново опросить систему - снимаем хотя бы то, что знали при применении
                logger.error(f"❌ Cleanup {batch.mode.value} не перестроен, используем сохраненный: {e.message}")
                failures.append((e.command, e.diagnostic))

        logger.info(f"🧹 Удаляем правила {batch.mode.value} ({len(steps)} шагов)")
        result = self.executor.run_batch(steps, stop_on_error=False)
        failures.extend((command_result.argv, command_result.diagnostic) for _, command_result in result.errors)
        if failures:
            raise RuleCleanupError(
                f"Правила {batch.mode.value} удалены не полностью ({len(failures)} ошибок)",
                failures=failures,
            )

        logger.info(f"✅ Правила {batch.mode.value} удалены")

    def clean_leftovers(self) -> List[RuleCleanupError]:
        """
        Очистка правил всех режимов платформы (после аварийного завершения).

        Без сохраненного состояния маршрут по умолчанию для tun не
        восстанавливается, удаляется только маршрут через наш интерфейс.
        """
        errors = []
        for mode in self.supported_modes():
            # Системный прокси мог быть выставлен пользователем вручную - не трогаем
            if mode == TransparentMode.SYSTEM_PROXY:
                continue
            backend = self._backend(mode, self.platform)
            batch = RuleBatch(
                mode=mode,
                platform=self.platform,
                ports=PortSet(),
                cleanup=tuple(backend.build_cleanup(PortSet(), {}, self.executor)),
            )
            try:
                self.clean(batch)
            except RuleCleanupError as e:
                logger.error(f"❌ Остатки правил {mode.value} не удалены: {e}")
                errors.append(e)
        return errors
