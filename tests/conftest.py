"""Shared fixtures.

FakeHost is an in-memory model of the OS tools the rule backends drive
(iptables/ip6tables, ip, networksetup, gsettings, reg). It is plugged into
CommandExecutor as its runner, so rule batches run end-to-end without root.
"""

from __future__ import annotations

import copy
import subprocess
import sys
import textwrap
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from core.models import EngineConfig, Platform, PortSet
from core.readiness import LogPatternReadiness
from core.rules import RuleEngine, RuleOptions
from utils.command_executor import CommandExecutor

BUILTIN_CHAINS = {
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
    "mangle": ("PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"),
}
BUILTIN_TARGETS = {"ACCEPT", "DROP", "RETURN", "REDIRECT", "TPROXY", "MARK"}

NO_CHAIN = "iptables: No chain/target/match by that name.\n"
BAD_RULE = "iptables: Bad rule (does a matching rule exist in that chain?).\n"
NO_SUCH_PROCESS = "RTNETLINK answers: No such process\n"

DEFAULT_ROUTE = "default via 192.168.1.1 dev eth0 proto dhcp src 192.168.1.10 metric 100"


def _done(argv, returncode=0, stdout="", stderr="") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(list(argv), returncode, stdout, stderr)


def _route_key(tokens: Sequence[str]) -> Tuple[str, str, str, str]:
    """(type, prefix, table, metric) identifies a kernel route."""
    tokens = list(tokens)
    route_type = "unicast"
    if tokens and tokens[0] in ("local", "unicast"):
        route_type = tokens.pop(0)
    prefix = tokens[0] if tokens else ""
    table = "main"
    metric = "0"
    if "table" in tokens:
        table = tokens[tokens.index("table") + 1]
    if "metric" in tokens:
        metric = tokens[tokens.index("metric") + 1]
    return route_type, prefix, table, metric


def _route_text(tokens: Sequence[str]) -> str:
    tokens = list(tokens)
    if "table" in tokens:
        index = tokens.index("table")
        del tokens[index:index + 2]
    return " ".join(tokens)


class FakeHost:
    """In-memory host: netfilter tables, routes, policy rules, links, proxy settings."""

    def __init__(self, services: Optional[List[str]] = None) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.iptables: Dict[Tuple[str, str], Dict[str, List[Tuple[str, ...]]]] = {}
        for binary in ("iptables", "ip6tables"):
            for table, chains in BUILTIN_CHAINS.items():
                self.iptables[(binary, table)] = {chain: [] for chain in chains}
        # family -> {route_key: text}
        self.routes: Dict[str, Dict[tuple, str]] = {
            "4": {_route_key(DEFAULT_ROUTE.split()): DEFAULT_ROUTE},
            "6": {},
        }
        self.ip_rules: Dict[str, List[str]] = {"4": [], "6": []}
        self.links: Dict[str, str] = {"lo": "UP", "eth0": "UP"}
        self.services: List[str] = list(services or ["Wi-Fi", "Ethernet"])
        self.disabled_services: List[str] = []
        self.network_proxies: Dict[str, Dict[str, object]] = {}
        self.gsettings: Dict[Tuple[str, str], str] = {("org.gnome.system.proxy", "mode"): "'none'"}
        self.registry: Dict[str, Tuple[str, str]] = {}
        self._failures: List[Tuple[Callable[[Tuple[str, ...]], bool], int, str]] = []
        self._timeouts: List[Callable[[Tuple[str, ...]], bool]] = []

    # --- Test controls ---

    def fail_on(self, prefix: Sequence[str], returncode: int = 1, stderr: str = "injected failure",
                times: Optional[int] = None) -> None:
        """Make commands starting with ``prefix`` fail (optionally only ``times`` times)."""
        prefix = tuple(prefix)
        state = {'left': times}

        def matches(argv: Tuple[str, ...]) -> bool:
            if argv[:len(prefix)] != prefix:
                return False
            if state['left'] is None:
                return True
            if state['left'] <= 0:
                return False
            state['left'] -= 1
            return True

        self._failures.append((matches, returncode, stderr))

    def timeout_on(self, prefix: Sequence[str]) -> None:
        prefix = tuple(prefix)
        self._timeouts.append(lambda argv: argv[:len(prefix)] == prefix)

    def snapshot(self) -> dict:
        return copy.deepcopy({
            'iptables': self.iptables,
            'routes': self.routes,
            'ip_rules': self.ip_rules,
            'links': self.links,
            'network_proxies': self.network_proxies,
            'gsettings': self.gsettings,
            'registry': self.registry,
        })

    def chain(self, table: str, chain: str, binary: str = "iptables") -> Optional[List[Tuple[str, ...]]]:
        return self.iptables[(binary, table)].get(chain)

    def default_routes(self, family: str = "4") -> List[str]:
        return [text for key, text in self.routes[family].items() if key[1] == "default" and key[2] == "main"]

    def commands(self, program: str) -> List[Tuple[str, ...]]:
        return [argv for argv in self.calls if argv[0] == program]

    # --- Runner ---

    def __call__(self, argv: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
        argv = tuple(argv)
        self.calls.append(argv)

        for matches in self._timeouts:
            if matches(argv):
                raise subprocess.TimeoutExpired(list(argv), timeout)
        for matches, returncode, stderr in self._failures:
            if matches(argv):
                return _done(argv, returncode, stderr=stderr)

        program = argv[0]
        if program in ("iptables", "ip6tables"):
            return self._iptables(argv)
        if program == "ip":
            return self._ip(argv)
        if program == "networksetup":
            return self._networksetup(argv)
        if program == "gsettings":
            return self._gsettings(argv)
        if program == "reg":
            return self._reg(argv)
        raise FileNotFoundError(program)

    # --- iptables ---

    def _referenced(self, chains: Dict[str, List[tuple]], name: str) -> bool:
        for rules in chains.values():
            for rule in rules:
                if "-j" in rule and rule[rule.index("-j") + 1] == name:
                    return True
        return False

    def _iptables(self, argv: Tuple[str, ...]) -> subprocess.CompletedProcess:
        binary = argv[0]
        assert argv[1:3] == ("-w", "2"), argv
        assert argv[3] == "-t", argv
        table, op, chain = argv[4], argv[5], argv[6]
        spec = tuple(argv[7:])
        chains = self.iptables[(binary, table)]
        builtin = chain in BUILTIN_CHAINS[table]

        if op == "-nL":
            if chain not in chains:
                return _done(argv, 1, stderr=NO_CHAIN)
            return _done(argv, 0, stdout=f"Chain {chain} (0 references)\n")
        if op == "-N":
            if chain in chains:
                return _done(argv, 1, stderr="iptables: Chain already exists.\n")
            chains[chain] = []
            return _done(argv)
        if op == "-X":
            if chain not in chains or builtin:
                return _done(argv, 1, stderr=NO_CHAIN)
            if chains[chain]:
                return _done(argv, 1, stderr="iptables: Directory not empty.\n")
            if self._referenced(chains, chain):
                return _done(argv, 1, stderr="iptables: Too many links.\n")
            del chains[chain]
            return _done(argv)
        if chain not in chains:
            return _done(argv, 1, stderr=NO_CHAIN)
        if op == "-F":
            chains[chain] = []
            return _done(argv)
        if op == "-C":
            return _done(argv, 0 if spec in chains[chain] else 1, stderr="" if spec in chains[chain] else BAD_RULE)
        if op in ("-A", "-I"):
            if "-j" in spec:
                target = spec[spec.index("-j") + 1]
                if target not in BUILTIN_TARGETS and target not in chains:
                    return _done(argv, 2, stderr=f"iptables v1.8.7 (nf_tables): Chain '{target}' does not exist\n")
            if op == "-A":
                chains[chain].append(spec)
            else:
                chains[chain].insert(0, spec)
            return _done(argv)
        if op == "-D":
            if spec not in chains[chain]:
                return _done(argv, 1, stderr=BAD_RULE)
            chains[chain].remove(spec)
            return _done(argv)
        return _done(argv, 2, stderr=f"unknown option {op}")

    # --- ip ---

    def _ip(self, argv: Tuple[str, ...]) -> subprocess.CompletedProcess:
        args = list(argv[1:])
        family = "4"
        if args and args[0] == "-6":
            family = "6"
            args.pop(0)
        obj, args = args[0], args[1:]

        if obj == "route":
            return self._ip_route(argv, family, args)
        if obj == "rule":
            return self._ip_rule(argv, family, args)
        if obj == "link":
            return self._ip_link(argv, args)
        if obj == "tuntap":
            return self._ip_tuntap(argv, args)
        return _done(argv, 255, stderr=f'Object "{obj}" is unknown, try "ip help".\n')

    def _ip_route(self, argv, family: str, args: List[str]) -> subprocess.CompletedProcess:
        action, tokens = args[0], args[1:]
        routes = self.routes[family]

        if action == "show":
            lines = [text for key, text in routes.items()
                     if key[2] == "main" and (not tokens or key[1] == tokens[0])]
            return _done(argv, 0, stdout="".join(line + "\n" for line in lines))

        if action == "replace":
            if "dev" in tokens:
                device = tokens[tokens.index("dev") + 1]
                if device not in self.links:
                    return _done(argv, 1, stderr=f'Cannot find device "{device}"\n')
            routes[_route_key(tokens)] = _route_text(tokens)
            return _done(argv)

        if action == "del":
            key = _route_key(tokens)
            device = tokens[tokens.index("dev") + 1] if "dev" in tokens else None
            for existing_key, text in list(routes.items()):
                same = existing_key[:3] == key[:3]
                if "metric" in tokens:
                    same = same and existing_key[3] == key[3]
                if same and (device is None or f"dev {device}" in text):
                    del routes[existing_key]
                    return _done(argv)
            return _done(argv, 2, stderr=NO_SUCH_PROCESS)

        return _done(argv, 255, stderr=f'Command "{action}" is unknown\n')

    def _ip_rule(self, argv, family: str, args: List[str]) -> subprocess.CompletedProcess:
        action, tokens = args[0], args[1:]
        rules = self.ip_rules[family]
        if action == "show":
            lines = ["0:\tfrom all lookup local"]
            lines += [f"{32765 - i}:\tfrom all {rule}" for i, rule in enumerate(rules)]
            lines += ["32766:\tfrom all lookup main", "32767:\tfrom all lookup default"]
            return _done(argv, 0, stdout="\n".join(lines) + "\n")

        mark = tokens[tokens.index("fwmark") + 1]
        table = tokens[tokens.index("table") + 1]
        text = f"fwmark {mark} lookup {table}"
        if action == "add":
            rules.append(text)
            return _done(argv)
        if action == "del":
            if text not in rules:
                return _done(argv, 2, stderr="RTNETLINK answers: No such file or directory\n")
            rules.remove(text)
            return _done(argv)
        return _done(argv, 255, stderr=f'Command "{action}" is unknown\n')

    def _ip_link(self, argv, args: List[str]) -> subprocess.CompletedProcess:
        action = args[0]
        device = args[args.index("dev") + 1]
        if device not in self.links:
            if action == "show":
                return _done(argv, 1, stderr=f'Device "{device}" does not exist.\n')
            return _done(argv, 1, stderr=f'Cannot find device "{device}"\n')
        if action == "show":
            return _done(argv, 0, stdout=f"5: {device}: <POINTOPOINT> mtu 1500 state {self.links[device]}\n")
        if action == "set":
            self.links[device] = "UP" if args[-1] == "up" else "DOWN"
            return _done(argv)
        return _done(argv, 255, stderr=f'Command "{action}" is unknown\n')

    def _ip_tuntap(self, argv, args: List[str]) -> subprocess.CompletedProcess:
        action = args[0]
        device = args[args.index("dev") + 1]
        if action == "add":
            if device in self.links:
                return _done(argv, 1, stderr="ioctl(TUNSETIFF): Device or resource busy\n")
            self.links[device] = "DOWN"
            return _done(argv)
        if action == "del":
            if device not in self.links:
                return _done(argv, 1, stderr=f'Cannot find device "{device}"\n')
            del self.links[device]
            # The kernel drops routes together with the device
            for family_routes in self.routes.values():
                for key, text in list(family_routes.items()):
                    if f"dev {device}" in text:
                        del family_routes[key]
            return _done(argv)
        return _done(argv, 255, stderr=f'Command "{action}" is unknown\n')

    # --- macOS networksetup ---

    def _networksetup(self, argv: Tuple[str, ...]) -> subprocess.CompletedProcess:
        command = argv[1]
        if command == "-listallnetworkservices":
            lines = ["An asterisk (*) denotes that a network service is disabled."]
            lines += self.services
            lines += [f"*{name}" for name in self.disabled_services]
            return _done(argv, 0, stdout="\n".join(lines) + "\n")

        service = argv[2]
        if service not in self.services:
            return _done(argv, 4, stdout=f"{service} is not a recognized network service.\n** Error: The parameters were not valid.\n")

        proxies = self.network_proxies.setdefault(service, {})
        if command in ("-setwebproxy", "-setsecurewebproxy", "-setsocksfirewallproxy"):
            kind = command[4:]
            proxies[kind] = {'host': argv[3], 'port': int(argv[4]), 'enabled': True}
        elif command.endswith("proxystate"):
            kind = command[4:-5]
            if kind in proxies:
                proxies[kind]['enabled'] = argv[3] == "on"
        elif command == "-setproxybypassdomains":
            proxies['bypass'] = list(argv[3:])
        else:
            return _done(argv, 4, stdout="** Error: The parameters were not valid.\n")
        return _done(argv)

    def enabled_proxies(self) -> List[Tuple[str, str]]:
        return sorted(
            (service, kind)
            for service, proxies in self.network_proxies.items()
            for kind, value in proxies.items()
            if isinstance(value, dict) and value.get('enabled')
        )

    # --- gsettings / reg ---

    def _gsettings(self, argv: Tuple[str, ...]) -> subprocess.CompletedProcess:
        _, action, schema, key = argv[:4]
        if action == "set":
            self.gsettings[(schema, key)] = argv[4]
            return _done(argv)
        if action == "get":
            return _done(argv, 0, stdout=self.gsettings.get((schema, key), "''") + "\n")
        return _done(argv, 1, stderr=f"Unknown command {action}\n")

    def _reg(self, argv: Tuple[str, ...]) -> subprocess.CompletedProcess:
        action = argv[1]
        name = argv[argv.index("/v") + 1]
        if action == "add":
            self.registry[name] = (argv[argv.index("/t") + 1], argv[argv.index("/d") + 1])
            return _done(argv, 0, stdout="The operation completed successfully.\n")
        if action == "delete":
            if name not in self.registry:
                return _done(argv, 1, stderr="ERROR: The system was unable to find the specified registry key or value.\n")
            del self.registry[name]
            return _done(argv, 0, stdout="The operation completed successfully.\n")
        return _done(argv, 1, stderr="ERROR: Invalid syntax.\n")


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def executor(host: FakeHost) -> CommandExecutor:
    return CommandExecutor(timeout=1.0, runner=host)


@pytest.fixture
def make_rule_engine(executor: CommandExecutor):
    """Factory: RuleEngine for a given platform on top of the fake host."""

    def factory(platform: Platform = Platform.LINUX, **options) -> RuleEngine:
        return RuleEngine(executor, platform=platform, options=RuleOptions(**options))

    return factory


@pytest.fixture
def rule_engine(make_rule_engine) -> RuleEngine:
    return make_rule_engine()


# --- Fake engine process ---

ENGINE_SCRIPT = textwrap.dedent("""\
    import os
    import signal
    import sys
    import time

    config_path = os.path.abspath(sys.argv[1])
    workdir = os.path.dirname(config_path)
    with open(config_path) as f:
        behaviour = f.read().split()

    print("engine booting", flush=True)
    if "early-exit" in behaviour:
        print("fatal: invalid outbound", flush=True)
        sys.exit(2)
    if "ignore-term" in behaviour and hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if "silent" not in behaviour:
        print("engine started", flush=True)

    while True:
        if os.path.exists(os.path.join(workdir, "crash")):
            print("panic: runtime error", flush=True)
            sys.exit(3)
        time.sleep(0.02)
""")

READY_PATTERN = r"engine started"


@pytest.fixture
def engine_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_engine.py"
    script.write_text(ENGINE_SCRIPT, encoding="utf-8")
    return script


@pytest.fixture
def make_engine_config(tmp_path: Path):
    """Factory: engine config file whose content selects the fake engine's behaviour."""
    counter = {'n': 0}

    def factory(behaviour: str = "normal", ports: Optional[PortSet] = None) -> EngineConfig:
        counter['n'] += 1
        path = tmp_path / f"engine-{counter['n']}.json"
        path.write_text(f"{behaviour}\n", encoding="utf-8")
        return EngineConfig.from_file(path, ports or PortSet())

    return factory


@pytest.fixture
def supervisor_kwargs(engine_script: Path) -> dict:
    return {
        'binary': sys.executable,
        'args': ("-u", str(engine_script), "{config}"),
        'readiness': LogPatternReadiness(READY_PATTERN),
        'startup_timeout': 10.0,
        'stop_timeout': 2.0,
        'kill_timeout': 2.0,
        'poll_interval': 0.02,
        'check_ports': False,
    }
