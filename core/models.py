# core/models.py
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    """Состояния жизненного цикла процесса движка"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class TransparentMode(str, Enum):
    """Режимы прозрачного проксирования"""
    DISABLED = "disabled"
    REDIRECT = "redirect"
    TPROXY = "tproxy"
    TUN = "tun"
    SYSTEM_PROXY = "system_proxy"

    @classmethod
    def parse(cls, value) -> "TransparentMode":
        """Принимает как значение enum, так и строку из настроек"""
        if isinstance(value, cls):
            return value
        if not value:
            return cls.DISABLED
        normalized = str(value).strip().lower().replace("-", "_")
        # Варианты написания из старых настроек
        aliases = {"systemproxy": "system_proxy", "off": "disabled", "none": "disabled"}
        return cls(aliases.get(normalized, normalized))


class Platform(str, Enum):
    LINUX = "linux"
    DARWIN = "darwin"
    WINDOWS = "windows"


@dataclass(frozen=True)
class PortSet:
    """Порты, которые движок откроет после запуска"""
    transparent: Optional[int] = None
    socks: Optional[int] = None
    http: Optional[int] = None

    def all_ports(self) -> Tuple[int, ...]:
        ports = {p for p in (self.transparent, self.socks, self.http) if p}
        return tuple(sorted(ports))

    def to_dict(self) -> dict:
        return {'transparent': self.transparent, 'socks': self.socks, 'http': self.http}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PortSet":
        data = data or {}
        return cls(
            transparent=data.get('transparent'),
            socks=data.get('socks'),
            http=data.get('http'),
        )


@dataclass(frozen=True)
class EngineConfig:
    """
    Уже сгенерированный конфиг движка.

    Неизменяем: новый конфиг означает новый процесс. Сравнение двух
    конфигов идет по пути, портам и хешу содержимого файла.
    """
    config_path: Path
    ports: PortSet = field(default_factory=PortSet)
    digest: str = ""

    @classmethod
    def from_file(cls, config_path, ports: Optional[PortSet] = None) -> "EngineConfig":
        """Создает EngineConfig и считает sha256 содержимого файла"""
        path = Path(config_path)
        digest = ""
        try:
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
        except OSError as e:
            # Отсутствие файла поймает preflight супервизора
            logger.debug(f"Не удалось прочитать конфиг {path}: {e}")
        return cls(config_path=path, ports=ports or PortSet(), digest=digest)


@dataclass(frozen=True)
class ProcessExit:
    """Описание завершения процесса движка"""
    pid: int
    returncode: Optional[int]
    generation: int
    expected: bool
    output_tail: str = ""
