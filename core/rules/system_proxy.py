# core/rules/system_proxy.py
import logging
from typing import List

from core.errors import RuleApplyError
from core.models import PortSet
from core.rules.base import RuleOptions
from utils.command_executor import CommandStep

logger = logging.getLogger(__name__)

# macOS: сервис исчез между включением и очисткой - это не ошибка
SERVICE_GONE_MARKERS = (
    "is not a recognized network service",
    "The parameters were not valid",
)

LIST_SERVICES = ("networksetup", "-listallnetworkservices")

WINDOWS_INTERNET_SETTINGS = r"HKCU\Software\Microsoft\Windows\CurrentVersion\Internet Settings"
WINDOWS_VALUE_MISSING_MARKERS = ("unable to find",)


def require_proxy_ports(ports: PortSet) -> None:
    if not ports.http and not ports.socks:
        raise RuleApplyError(
            "Для режима system_proxy не задан ни HTTP, ни SOCKS порт",
            "Генератор конфигурации должен выделить порт http или socks",
        )


def list_network_services(executor) -> List[str]:
    """
    Активные сетевые сервисы macOS (отключенные помечены звездочкой).

    Ошибка networksetup - RuleApplyError, а не пустой список.
    """
    result = executor.run(LIST_SERVICES)
    if not result.ok:
        logger.error(f"❌ Не удалось получить список сетевых сервисов: {result.diagnostic}")
        raise RuleApplyError(
            "Не удалось получить список сетевых сервисов",
            result.diagnostic,
            command=result.argv,
        )

    services = []
    for line in result.stdout.splitlines():
        line = line.strip()
        if not line or line.startswith("*") or line.startswith("An asterisk"):
            continue
        services.append(line)
    return services


class NetworkSetupSystemProxy:
    """macOS: прокси на каждом сетевом сервисе через networksetup"""

    requires_admin = False
    # Сервисы подключаются и отключаются, поэтому при очистке список строится заново
    reenumerate_on_cleanup = True

    def __init__(self, options: RuleOptions):
        self.options = options

    def capture(self, executor, ports: PortSet) -> dict:
        return {'services': list_network_services(executor)}

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        require_proxy_ports(ports)
        host = self.options.proxy_host
        services = captured.get('services') or []
        if not services:
            raise RuleApplyError(
                "Нет активных сетевых сервисов, системный прокси не на что ставить",
                "networksetup -listallnetworkservices не вернул ни одного включенного сервиса",
                command=LIST_SERVICES,
            )

        steps = []
        for service in services:
            if ports.http:
                steps.append(CommandStep(
                    ("networksetup", "-setwebproxy", service, host, str(ports.http)),
                    description=f"{service}: HTTP прокси {host}:{ports.http}",
                ))
                steps.append(CommandStep(
                    ("networksetup", "-setsecurewebproxy", service, host, str(ports.http)),
                    description=f"{service}: HTTPS прокси {host}:{ports.http}",
                ))
            if ports.socks:
                steps.append(CommandStep(
                    ("networksetup", "-setsocksfirewallproxy", service, host, str(ports.socks)),
                    description=f"{service}: SOCKS прокси {host}:{ports.socks}",
                ))
            steps.append(CommandStep(
                ("networksetup", "-setproxybypassdomains", service) + tuple(self.options.bypass_hosts),
                description=f"{service}: исключения прокси",
            ))
        return steps

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        # Ошибка перечисления уходит наверх: RuleEngine.clean выполнит сохраненный cleanup
        steps = []
        for service in list_network_services(executor):
            for command in ("-setwebproxystate", "-setsecurewebproxystate", "-setsocksfirewallproxystate"):
                steps.append(CommandStep(
                    ("networksetup", command, service, "off"),
                    description=f"{service}: {command} off",
                    tolerate=SERVICE_GONE_MARKERS,
                ))
        return steps


class GnomeSystemProxy:
    """Linux: системный прокси GNOME через gsettings"""

    requires_admin = False
    reenumerate_on_cleanup = False

    def __init__(self, options: RuleOptions):
        self.options = options

    def capture(self, executor, ports: PortSet) -> dict:
        return {}

    @staticmethod
    def _set(schema: str, key: str, value: str) -> CommandStep:
        return CommandStep(
            ("gsettings", "set", schema, key, value),
            description=f"gsettings {schema} {key}={value}",
        )

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        require_proxy_ports(ports)
        host = self.options.proxy_host
        ignore_hosts = "[" + ", ".join(f"'{h}'" for h in self.options.bypass_hosts) + "]"

        steps = []
        if ports.http:
            for schema in ("org.gnome.system.proxy.http", "org.gnome.system.proxy.https"):
                steps.append(self._set(schema, "host", host))
                steps.append(self._set(schema, "port", str(ports.http)))
        if ports.socks:
            steps.append(self._set("org.gnome.system.proxy.socks", "host", host))
            steps.append(self._set("org.gnome.system.proxy.socks", "port", str(ports.socks)))
        steps.append(self._set("org.gnome.system.proxy", "ignore-hosts", ignore_hosts))
        # Режим manual включаем последним, когда адреса уже прописаны
        steps.append(self._set("org.gnome.system.proxy", "mode", "manual"))
        return steps

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        return [self._set("org.gnome.system.proxy", "mode", "none")]


class WindowsSystemProxy:
    """Windows: параметры WinINet в реестре текущего пользователя"""

    requires_admin = False
    reenumerate_on_cleanup = False

    def __init__(self, options: RuleOptions):
        self.options = options

    def capture(self, executor, ports: PortSet) -> dict:
        return {}

    @staticmethod
    def _reg_add(name: str, kind: str, value: str) -> CommandStep:
        return CommandStep(
            ("reg", "add", WINDOWS_INTERNET_SETTINGS, "/v", name, "/t", kind, "/d", value, "/f"),
            description=f"реестр: {name}={value}",
        )

    def build_setup(self, ports: PortSet, captured: dict) -> List[CommandStep]:
        require_proxy_ports(ports)
        host = self.options.proxy_host

        servers = []
        if ports.http:
            servers.append(f"http={host}:{ports.http}")
            servers.append(f"https={host}:{ports.http}")
        if ports.socks:
            servers.append(f"socks={host}:{ports.socks}")

        bypass = ";".join(["<local>"] + [h for h in self.options.bypass_hosts if "/" not in h])
        return [
            self._reg_add("ProxyServer", "REG_SZ", ";".join(servers)),
            self._reg_add("ProxyOverride", "REG_SZ", bypass),
            self._reg_add("ProxyEnable", "REG_DWORD", "1"),
        ]

    def build_cleanup(self, ports: PortSet, captured: dict, executor) -> List[CommandStep]:
        return [
            self._reg_add("ProxyEnable", "REG_DWORD", "0"),
            CommandStep(
                ("reg", "delete", WINDOWS_INTERNET_SETTINGS, "/v", "ProxyServer", "/f"),
                description="реестр: удалить ProxyServer",
                tolerate=WINDOWS_VALUE_MISSING_MARKERS,
            ),
        ]
