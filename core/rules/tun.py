# core/rules/tun.py
import logging
from typing import List, Optional

from core.errors import RuleApplyError
from core.models import PortSet
from core.rules.base import RuleOptions
from utils.command_executor import CommandCheck, CommandStep

logger = logging.getLogger(__name__)

ROUTE_MISSING_MARKERS = ("No such process", "Cannot find device", "does not exist")

# Флаги, которые ip route show печатает, но не принимает на вход
_OUTPUT_ONLY_FLAGS = {"linkdown", "dead", "offload", "trap", "rt_offload", "rt_trap", "rt_offload_failed"}


def _route_device(tokens: List[str]) -> Optional[str]:
    if "dev" in tokens:
        index = tokens.index("dev")
        if index + 1 < len(tokens):
            return tokens[index + 1]
    return None


def route_metric(route: Optional[str]) -> int:
    """Метрика маршрута из вывода ip route (0, если не указана)"""
    if not route:
        return 0
    tokens = route.split()
    if "metric" in tokens:
        index = tokens.index("metric")
        try:
            return int(tokens[index + 1])
        except (IndexError, ValueError):
            return 0
    return 0


def parse_default_route(output: str, exclude_device: str) -> Optional[str]:
    """Первый маршрут по умолчанию, не проходящий через наш tun"""
    for line in output.splitlines():
        tokens = [t for t in line.split() if t not in _OUTPUT_ONLY_FLAGS]
        if not tokens or tokens[0] != "default":
            continue
        if _route_device(tokens) == exclude_device:
            continue
        return " ".join(tokens)
    return None


class LinuxTun:
    """
    Режим tun: виртуальный интерфейс и маршрут по умолчанию через него.

    Самый опасный режим: ошибка может оставить хост без маршрута по
    умолчанию. Поэтому прежний маршрут снимается до применения и
    восстанавливается cleanup'ом ровно в том виде, в каком был.
    """

    requires_admin = True
    reenumerate_on_cleanup = False

    def __init__(self, options: RuleOptions):
        self.options = options

    @property
    def device(self) -> str:
        return self.options.tun_device

    def _link_exists(self) -> CommandCheck:
        return CommandCheck(("ip", "link", "show", "dev", self.device))

    def capture(self, executor, ports: PortSet) -> dict:
        result = executor.run(("ip", "route", "show", "default"))
        if not result.ok:
            # Без сохраненного маршрута replace затрет его безвозвратно
            logger.error(f"❌ Не удалось прочитать маршрут по умолчанию: {result.diagnostic}")
            raise RuleApplyError(
                "Не удалось сохранить маршрут по умолчанию перед включением tun",
                result.diagnostic,
                command=result.argv,
            )

        route = parse_default_route(result.stdout, self.device)
        if route:
            logger.info(f"📌 Сохранен маршрут по умолчанию: {route}")
        else:
            logger.warning("⚠️ Маршрут по умолчанию не найден, восстанавливать будет нечего")
        return {'default_route': route}

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        # Та же метрика, что у прежнего маршрута: replace заменяет его, а не добавляет второй
        metric = route_metric(captured.get('default_route'))
        return [
            CommandStep(
                ("ip", "tuntap", "add", "mode", "tun", "dev", self.device),
                description=f"создать интерфейс {self.device}",
                skip_if=self._link_exists(),
            ),
            CommandStep(
                ("ip", "link", "set", "dev", self.device, "up"),
                description=f"поднять интерфейс {self.device}",
            ),
            CommandStep(
                ("ip", "route", "replace", "default", "dev", self.device, "metric", str(metric)),
                description=f"маршрут по умолчанию через {self.device}",
            ),
        ]

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        steps = []
        route = captured.get('default_route')
        if route:
            steps.append(CommandStep(
                ("ip", "route", "replace") + tuple(route.split()),
                description=f"восстановить маршрут по умолчанию: {route}",
            ))
        steps.extend([
            CommandStep(
                ("ip", "route", "del", "default", "dev", self.device),
                description=f"удалить маршрут по умолчанию через {self.device}",
                tolerate=ROUTE_MISSING_MARKERS,
            ),
            CommandStep(
                ("ip", "link", "set", "dev", self.device, "down"),
                description=f"опустить интерфейс {self.device}",
                only_if=self._link_exists(),
                tolerate=ROUTE_MISSING_MARKERS,
            ),
            CommandStep(
                ("ip", "tuntap", "del", "mode", "tun", "dev", self.device),
                description=f"удалить интерфейс {self.device}",
                only_if=self._link_exists(),
                tolerate=ROUTE_MISSING_MARKERS,
            ),
        ])
        return steps
