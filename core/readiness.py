# core/readiness.py
"""
Проверки готовности движка.

Супервизор опрашивает проверку каждые poll_interval секунд, пока процесс в
состоянии Starting. Проверка получает ProcessHandle и возвращает bool;
исключение внутри проверки означает "еще не готов".
"""
import logging
import re

import httpx

from utils.port_utils import is_port_accepting

logger = logging.getLogger(__name__)


class PortReadiness:
    """Готов, когда все TCP-порты движка принимают соединения (по умолчанию)"""

    def __init__(self, host: str = '127.0.0.1', connect_timeout: float = 0.3):
        self.host = host
        self.connect_timeout = connect_timeout

    def __call__(self, handle) -> bool:
        ports = handle.config.ports.all_ports()
        return all(is_port_accepting(port, self.host, self.connect_timeout) for port in ports)

    def __repr__(self):
        return f"PortReadiness({self.host})"


class LogPatternReadiness:
    """Готов, когда в выводе движка появилась строка по шаблону"""

    def __init__(self, pattern: str):
        self.pattern = re.compile(pattern)

    def __call__(self, handle) -> bool:
        return any(self.pattern.search(line) for line in handle.output_lines())

    def __repr__(self):
        return f"LogPatternReadiness({self.pattern.pattern!r})"


class HttpReadiness:
    """Готов, когда health-эндпоинт движка отвечает кодом < 500"""

    def __init__(self, url: str, timeout: float = 1.0, transport=None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def __call__(self, handle) -> bool:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(self.url)
                return response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug(f"Health-check {self.url} еще не отвечает: {e}")
            return False

    def __repr__(self):
        return f"HttpReadiness({self.url})"


def readiness_from_config(engine_config: dict):
    """Строит проверку готовности по секции engine из config.json"""
    kind = (engine_config.get('readiness') or 'port').lower()
    if kind == 'log':
        return LogPatternReadiness(engine_config.get('ready_pattern') or r"(?i)started")
    if kind == 'http':
        url = engine_config.get('health_url')
        if not url:
            raise ValueError("readiness=http требует engine.health_url")
        return HttpReadiness(url)
    if kind != 'port':
        logger.warning(f"⚠️ Неизвестный тип проверки готовности '{kind}', используем port")
    return PortReadiness()
