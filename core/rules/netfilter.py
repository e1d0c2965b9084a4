# core/rules/netfilter.py
"""
Правила netfilter (iptables/ip6tables) для режимов redirect и tproxy.

Каждый шаг setup проверяет наличие объекта перед созданием (-C / -nL),
каждый шаг cleanup выполняется только если объект существует, поэтому
повторное применение не дублирует правила, а очистка чистой системы
проходит молча.
"""
import logging
from dataclasses import dataclass
from typing import List, Tuple

from core.errors import RuleApplyError
from core.models import PortSet
from core.rules.base import RuleOptions
from utils.command_executor import CommandCheck, CommandStep

logger = logging.getLogger(__name__)

REDIRECT_CHAIN = "TP_RULE"
TPROXY_PRE_CHAIN = "TP_PRE"
TPROXY_OUT_CHAIN = "TP_OUT"

# Ответы iptables/ip, означающие что удалять уже нечего
MISSING_MARKERS = (
    "No chain/target/match by that name",
    "does a matching rule exist",
    "Bad rule",
    "No such process",
    "No such file or directory",
)

# Назначения на адреса самого хоста не перехватываем
LOCAL_DST = ("-m", "addrtype", "--dst-type", "LOCAL")
NOT_LOCAL_DST = ("-m", "addrtype", "!", "--dst-type", "LOCAL")


@dataclass(frozen=True)
class Family:
    name: str
    iptables: str
    ip: Tuple[str, ...]


IPV4 = Family("ipv4", "iptables", ("ip",))
IPV6 = Family("ipv6", "ip6tables", ("ip", "-6"))


def families(options: RuleOptions) -> List[Family]:
    return [IPV4, IPV6] if options.ipv6 else [IPV4]


def mark_spec(value: int, mask: int) -> str:
    return f"{value:#x}/{mask:#x}"


class Iptables:
    """Построитель шагов для одной таблицы одного семейства"""

    def __init__(self, family: Family, table: str):
        self.family = family
        self.table = table

    def argv(self, *args) -> Tuple[str, ...]:
        return (self.family.iptables, "-w", "2", "-t", self.table) + tuple(str(a) for a in args)

    def chain_exists(self, chain: str) -> CommandCheck:
        return CommandCheck(self.argv("-nL", chain))

    def rule_exists(self, chain: str, spec) -> CommandCheck:
        return CommandCheck(self.argv("-C", chain, *spec))

    def create_chain(self, chain: str) -> CommandStep:
        return CommandStep(
            self.argv("-N", chain),
            description=f"{self.family.iptables}: создать цепочку {self.table}/{chain}",
            skip_if=self.chain_exists(chain),
        )

    def append_rule(self, chain: str, spec, description: str) -> CommandStep:
        return CommandStep(
            self.argv("-A", chain, *spec),
            description=f"{self.family.iptables}: {description}",
            skip_if=self.rule_exists(chain, spec),
        )

    def insert_rule(self, chain: str, spec, description: str) -> CommandStep:
        return CommandStep(
            self.argv("-I", chain, *spec),
            description=f"{self.family.iptables}: {description}",
            skip_if=self.rule_exists(chain, spec),
        )

    def delete_rule(self, chain: str, spec, description: str) -> CommandStep:
        return CommandStep(
            self.argv("-D", chain, *spec),
            description=f"{self.family.iptables}: {description}",
            only_if=self.rule_exists(chain, spec),
            tolerate=MISSING_MARKERS,
        )

    def flush_chain(self, chain: str) -> CommandStep:
        return CommandStep(
            self.argv("-F", chain),
            description=f"{self.family.iptables}: удалить правила цепочки {self.table}/{chain}",
            only_if=self.chain_exists(chain),
            tolerate=MISSING_MARKERS,
        )

    def delete_chain(self, chain: str) -> CommandStep:
        return CommandStep(
            self.argv("-X", chain),
            description=f"{self.family.iptables}: удалить цепочку {self.table}/{chain}",
            only_if=self.chain_exists(chain),
            tolerate=MISSING_MARKERS,
        )


def require_transparent_port(ports: PortSet, mode_name: str) -> int:
    if not ports.transparent:
        raise RuleApplyError(
            f"Для режима {mode_name} не задан порт прозрачного прокси",
            "Генератор конфигурации должен выделить порт transparent",
        )
    return ports.transparent


class NetfilterRedirect:
    """Режим redirect: nat-цепочка TP_RULE с REDIRECT на локальный порт"""

    requires_admin = True
    reenumerate_on_cleanup = False

    def __init__(self, options: RuleOptions):
        self.options = options

    def capture(self, executor, ports: PortSet) -> dict:
        return {}

    def _splices(self) -> List[Tuple[str, Tuple[str, ...]]]:
        splice_spec = NOT_LOCAL_DST + ("-j", REDIRECT_CHAIN)
        splices = [("OUTPUT", splice_spec)]
        if self.options.intercept_forwarded:
            splices.append(("PREROUTING", splice_spec))
        return splices

    def _redirect_spec(self, protocol: str, port: int) -> Tuple[str, ...]:
        bypass = mark_spec(self.options.bypass_mark, self.options.bypass_mark)
        return (
            "-p", protocol,
            "-m", "mark", "!", "--mark", bypass,
            "-j", "REDIRECT", "--to-ports", str(port),
        )

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        port = require_transparent_port(ports, "redirect")
        protocols = ["tcp", "udp"] if self.options.redirect_udp else ["tcp"]

        steps = []
        for family in families(self.options):
            nat = Iptables(family, "nat")
            steps.append(nat.create_chain(REDIRECT_CHAIN))
            for protocol in protocols:
                steps.append(nat.append_rule(
                    REDIRECT_CHAIN,
                    self._redirect_spec(protocol, port),
                    f"перенаправить {protocol.upper()} на порт {port}",
                ))
            # Врезка в исходящий путь - последней, чтобы трафик не уходил в пустую цепочку
            for hook, spec in self._splices():
                steps.append(nat.insert_rule(hook, spec, f"подключить {REDIRECT_CHAIN} к {hook}"))
        return steps

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        steps = []
        for family in reversed(families(self.options)):
            nat = Iptables(family, "nat")
            for hook, spec in reversed(self._splices()):
                steps.append(nat.delete_rule(hook, spec, f"отключить {REDIRECT_CHAIN} от {hook}"))
            steps.append(nat.flush_chain(REDIRECT_CHAIN))
            steps.append(nat.delete_chain(REDIRECT_CHAIN))
        return steps


class NetfilterTProxy:
    """
    Режим tproxy: mangle-цепочки с TPROXY и policy routing.

    Пакеты с меткой tproxy_mark уходят в таблицу route_table, где
    единственный маршрут local default dev lo доставляет их на сокет движка.
    """

    requires_admin = True
    reenumerate_on_cleanup = False

    def __init__(self, options: RuleOptions):
        self.options = options

    def capture(self, executor, ports: PortSet) -> dict:
        return {}

    @property
    def _mark(self) -> str:
        return mark_spec(self.options.tproxy_mark, self.options.tproxy_mask)

    @property
    def _bypass(self) -> str:
        return mark_spec(self.options.bypass_mark, self.options.bypass_mark)

    def _route_step(self, family: Family) -> CommandStep:
        return CommandStep(
            family.ip + ("route", "replace", "local", "default", "dev", "lo",
                         "table", str(self.options.route_table)),
            description=f"{family.name}: маршрут local default в таблице {self.options.route_table}",
        )

    def _route_delete_step(self, family: Family) -> CommandStep:
        return CommandStep(
            family.ip + ("route", "del", "local", "default", "dev", "lo",
                         "table", str(self.options.route_table)),
            description=f"{family.name}: удалить маршрут из таблицы {self.options.route_table}",
            tolerate=MISSING_MARKERS,
        )

    def _ip_rule_check(self, family: Family) -> CommandCheck:
        return CommandCheck(
            family.ip + ("rule", "show"),
            expect=f"fwmark {self._mark} lookup {self.options.route_table}",
        )

    def _ip_rule_args(self) -> Tuple[str, ...]:
        return ("fwmark", self._mark, "table", str(self.options.route_table))

    def _pre_splice(self, intercept_forwarded: bool) -> Tuple[str, ...]:
        # Без перехвата LAN в TP_PRE попадает только свой трафик, вернувшийся через lo после TP_OUT
        if intercept_forwarded:
            return ("-j", TPROXY_PRE_CHAIN)
        return ("-i", "lo", "-j", TPROXY_PRE_CHAIN)

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        port = require_transparent_port(ports, "tproxy")

        steps = []
        for family in families(self.options):
            mangle = Iptables(family, "mangle")

            steps.append(mangle.create_chain(TPROXY_PRE_CHAIN))
            steps.append(mangle.append_rule(
                TPROXY_PRE_CHAIN, ("-m", "mark", "--mark", self._bypass, "-j", "RETURN"),
                "пропустить трафик движка",
            ))
            steps.append(mangle.append_rule(
                TPROXY_PRE_CHAIN, LOCAL_DST + ("-j", "RETURN"), "пропустить локальные адреса",
            ))
            for protocol in ("tcp", "udp"):
                steps.append(mangle.append_rule(
                    TPROXY_PRE_CHAIN,
                    ("-p", protocol, "-j", "TPROXY", "--on-port", str(port), "--tproxy-mark", self._mark),
                    f"TPROXY {protocol.upper()} на порт {port}",
                ))

            steps.append(mangle.create_chain(TPROXY_OUT_CHAIN))
            steps.append(mangle.append_rule(
                TPROXY_OUT_CHAIN, ("-m", "mark", "--mark", self._bypass, "-j", "RETURN"),
                "пропустить трафик движка",
            ))
            steps.append(mangle.append_rule(
                TPROXY_OUT_CHAIN, LOCAL_DST + ("-j", "RETURN"), "пропустить локальные адреса",
            ))
            for protocol in ("tcp", "udp"):
                steps.append(mangle.append_rule(
                    TPROXY_OUT_CHAIN,
                    ("-p", protocol, "-j", "MARK", "--set-mark", self._mark),
                    f"пометить исходящий {protocol.upper()}",
                ))

            steps.append(self._route_step(family))
            steps.append(CommandStep(
                family.ip + ("rule", "add") + self._ip_rule_args(),
                description=f"{family.name}: правило маршрутизации fwmark {self._mark}",
                skip_if=self._ip_rule_check(family),
            ))

            steps.append(mangle.insert_rule(
                "PREROUTING", self._pre_splice(self.options.intercept_forwarded),
                f"подключить {TPROXY_PRE_CHAIN} к PREROUTING",
            ))
            steps.append(mangle.insert_rule(
                "OUTPUT", ("-j", TPROXY_OUT_CHAIN), f"подключить {TPROXY_OUT_CHAIN} к OUTPUT",
            ))
        return steps

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        steps = []
        for family in reversed(families(self.options)):
            mangle = Iptables(family, "mangle")
            steps.append(mangle.delete_rule(
                "OUTPUT", ("-j", TPROXY_OUT_CHAIN), f"отключить {TPROXY_OUT_CHAIN} от OUTPUT",
            ))
            # Оба варианта врезки: настройка могла поменяться со времени применения
            for intercept_forwarded in (True, False):
                steps.append(mangle.delete_rule(
                    "PREROUTING", self._pre_splice(intercept_forwarded),
                    f"отключить {TPROXY_PRE_CHAIN} от PREROUTING",
                ))
            steps.append(CommandStep(
                family.ip + ("rule", "del") + self._ip_rule_args(),
                description=f"{family.name}: удалить правило fwmark {self._mark}",
                only_if=self._ip_rule_check(family),
                tolerate=MISSING_MARKERS,
            ))
            steps.append(self._route_delete_step(family))
            for chain in (TPROXY_OUT_CHAIN, TPROXY_PRE_CHAIN):
                steps.append(mangle.flush_chain(chain))
                steps.append(mangle.delete_chain(chain))
        return steps
