import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import os

logger = logging.getLogger(__name__)

APP_NAME = 'tproxy-supervisor'


def get_app_data_dir():
    """Возвращает путь для хранения данных приложения"""
    override = os.getenv('TPROXY_SUPERVISOR_HOME')
    if override:
        app_data_dir = Path(override)
    elif getattr(sys, 'frozen', False) or not (Path(__file__).parent.parent / 'pyproject.toml').exists():
        # Установленный пакет или собранный бинарник
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'TProxySupervisor'
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / APP_NAME
    else:
        # Dev режим
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Возвращает путь к файлу конфигурации"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'engine': {
                'binary': 'v2ray',
                'args': ['run', '-c', '{config}'],
                'config_path': '',           # Готовый конфиг от генератора
                'ports': {
                    'transparent': 52345,
                    'socks': 20170,
                    'http': 20171,
                },
                'readiness': 'port',         # port | log | http
                'ready_pattern': r'(?i)started',
                'health_url': '',
                'startup_timeout': 10.0,
                'stop_timeout': 5.0,
                'kill_timeout': 3.0,
                'check_ports': True,
            },

            'transparent': {
                'enabled': False,
                'mode': 'redirect',          # redirect | tproxy | tun | system_proxy
                'redirect_udp': False,
                'intercept_forwarded': False,
                'ipv6': False,
                'bypass_mark': 0x80,
                'tproxy_mark': 0x40,
                'tproxy_mask': 0xc0,
                'route_table': 100,
                'tun_device': 'tp0',
                'proxy_host': '127.0.0.1',
                'bypass_hosts': ['localhost', '127.0.0.0/8', '::1'],
            },

            'commands': {
                'timeout': 10.0,
            },

            'coordinator': {
                'busy_policy': 'queue',      # queue | reject
                'queue_timeout': None,
                'clean_leftovers_on_start': True,
            },

            'logging': {
                'level': 'INFO',
                'max_bytes': 5 * 1024 * 1024,
                'backup_count': 5,
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Объединяем с дефолтными значениями
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка загрузки конфига {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Сохраняет конфигурацию в файл"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Конфигурация сохранена")
            return True
        except OSError as e:
            logger.error(f"Ошибка сохранения конфига: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (dot notation)"""
        value = self.config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Устанавливает значение по ключу (dot notation)"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_engine_config(self) -> Dict[str, Any]:
        """Возвращает настройки движка"""
        return self.get('engine', {})

    def get_transparent_config(self) -> Dict[str, Any]:
        """Возвращает настройки прозрачного прокси"""
        return self.get('transparent', {})

    def set_transparent_config(self, config: Dict[str, Any], save: bool = True) -> bool:
        """Устанавливает настройки прозрачного прокси"""
        return self.set('transparent', config, save)

    def get_coordinator_config(self) -> Dict[str, Any]:
        return self.get('coordinator', {})

    def reset_to_defaults(self) -> bool:
        """Сбрасывает настройки к значениям по умолчанию"""
        self.config = self._get_default_config()
        return self.save()
