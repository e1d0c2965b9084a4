# core/rules/base.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from core.models import Platform, PortSet, TransparentMode
from utils.command_executor import CommandStep

logger = logging.getLogger(__name__)

# Метка, которой движок помечает свои исходящие соединения (sockopt mark)
DEFAULT_BYPASS_MARK = 0x80
DEFAULT_TPROXY_MARK = 0x40
DEFAULT_TPROXY_MASK = 0xc0
DEFAULT_ROUTE_TABLE = 100
DEFAULT_TUN_DEVICE = "tp0"
DEFAULT_BYPASS_HOSTS = ("localhost", "127.0.0.0/8", "::1")


@dataclass(frozen=True)
class RuleOptions:
    """Параметры построения правил (секция transparent в config.json)"""
    redirect_udp: bool = False
    intercept_forwarded: bool = False
    ipv6: bool = False
    bypass_mark: int = DEFAULT_BYPASS_MARK
    tproxy_mark: int = DEFAULT_TPROXY_MARK
    tproxy_mask: int = DEFAULT_TPROXY_MASK
    route_table: int = DEFAULT_ROUTE_TABLE
    tun_device: str = DEFAULT_TUN_DEVICE
    proxy_host: str = "127.0.0.1"
    bypass_hosts: Tuple[str, ...] = DEFAULT_BYPASS_HOSTS

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "RuleOptions":
        section = section or {}
        defaults = cls()
        return cls(
            redirect_udp=bool(section.get('redirect_udp', defaults.redirect_udp)),
            intercept_forwarded=bool(section.get('intercept_forwarded', defaults.intercept_forwarded)),
            ipv6=bool(section.get('ipv6', defaults.ipv6)),
            bypass_mark=int(section.get('bypass_mark', defaults.bypass_mark)),
            tproxy_mark=int(section.get('tproxy_mark', defaults.tproxy_mark)),
            tproxy_mask=int(section.get('tproxy_mask', defaults.tproxy_mask)),
            route_table=int(section.get('route_table', defaults.route_table)),
            tun_device=section.get('tun_device') or defaults.tun_device,
            proxy_host=section.get('proxy_host') or defaults.proxy_host,
            bypass_hosts=tuple(section.get('bypass_hosts') or defaults.bypass_hosts),
        )


@dataclass(frozen=True)
class RuleBatch:
    """
    Упорядоченный набор команд одного режима и парный ему cleanup.

    captured - значения, снятые с системы до применения (например,
    маршрут по умолчанию для tun), по ним cleanup восстанавливает состояние.
    """
    mode: TransparentMode
    platform: Platform
    ports: PortSet
    setup: Tuple[CommandStep, ...] = ()
    cleanup: Tuple[CommandStep, ...] = ()
    captured: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'mode': self.mode.value,
            'platform': self.platform.value,
            'ports': self.ports.to_dict(),
            'setup': [step.to_dict() for step in self.setup],
            'cleanup': [step.to_dict() for step in self.cleanup],
            'captured': dict(self.captured),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuleBatch":
        return cls(
            mode=TransparentMode(data['mode']),
            platform=Platform(data['platform']),
            ports=PortSet.from_dict(data.get('ports')),
            setup=tuple(CommandStep.from_dict(s) for s in data.get('setup', [])),
            cleanup=tuple(CommandStep.from_dict(s) for s in data.get('cleanup', [])),
            captured=dict(data.get('captured') or {}),
        )
