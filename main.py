# main.py
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path


def setup_logging(config=None):
    """Настраивает логирование ДО всех операций с ротацией"""
    from core.config_manager import get_app_data_dir
    from logging.handlers import RotatingFileHandler

    log_config = config.get('logging', {}) if config is not None else {}
    app_data_dir = Path(config.config_path).parent if config is not None else get_app_data_dir()
    logs_dir = app_data_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file = logs_dir / "tproxy_supervisor.log"

    # Ротирующий обработчик: по умолчанию 5MB, 5 резервных копий
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=int(log_config.get('max_bytes', 5 * 1024 * 1024)),
        backupCount=int(log_config.get('backup_count', 5)),
        encoding='utf-8'
    )
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO),
        handlers=[console_handler, file_handler],
        force=True,
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    def thread_exception_handler(args):
        logger.critical(f"Необработанное исключение в потоке {args.thread.name if args.thread else '?'}:",
                        exc_info=(args.exc_type, args.exc_value, args.exc_traceback))

    sys.excepthook = exception_handler
    threading.excepthook = thread_exception_handler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='tproxy-supervisor',
        description="Супервизор локального прокси-движка и правил прозрачного проксирования",
    )
    parser.add_argument('--config', type=Path, default=None,
                        help="путь к config.json (по умолчанию в каталоге данных приложения)")
    parser.add_argument('--mode', default=None,
                        help="режим: disabled, redirect, tproxy, tun, system_proxy")
    parser.add_argument('--engine-config', type=Path, default=None,
                        help="готовый конфиг движка")
    parser.add_argument('--cleanup', action='store_true',
                        help="только снять оставшиеся правила и выйти")
    return parser.parse_args(argv)


def apply_overrides(config, args):
    """Параметры командной строки поверх config.json (без сохранения)"""
    from core.models import TransparentMode

    if args.engine_config is not None:
        config.set('engine.config_path', str(args.engine_config))
    if args.mode is not None:
        mode = TransparentMode.parse(args.mode)
        config.set('transparent.enabled', mode != TransparentMode.DISABLED)
        if mode != TransparentMode.DISABLED:
            config.set('transparent.mode', mode.value)


def main(argv=None):
    """Основная функция приложения"""
    from core.config_manager import ConfigManager
    from core.errors import SupervisorError
    from core.startup_manager import StartupManager, load_desired_state
    from utils.single_instance import SingleInstance

    args = parse_args(argv)
    config = ConfigManager(args.config)

    # НАСТРАИВАЕМ ЛОГИРОВАНИЕ САМЫМ ПЕРВЫМ ДЕЛОМ
    setup_logging(config)
    setup_exception_handler()

    try:
        apply_overrides(config, args)
    except ValueError as e:
        logger.error(f"❌ {e}")
        return 2

    logger.info("🔍 Проверка единственного экземпляра...")
    instance_lock = SingleInstance(Path(config.config_path).parent)
    if not instance_lock.lock():
        logger.info("⚠️ Попытка запуска второго экземпляра - завершение")
        return 1

    coordinator = None
    try:
        logger.info("🚀 Запуск TProxy Supervisor")
        coordinator = StartupManager(config).run()

        if args.cleanup:
            logger.info("✅ Оставшиеся правила сняты")
            return 0

        engine_config, mode = load_desired_state(config)
        if engine_config is None:
            logger.error("❌ Не задан engine.config_path, запускать нечего")
            return 1

        try:
            coordinator.set_desired_state(engine_config, mode)
        except SupervisorError as e:
            logger.error(f"❌ Не удалось применить состояние: {e}")
            return 1

        stop_event = threading.Event()

        def on_signal(signum, frame):
            logger.info(f"📥 Получен сигнал {signum}")
            stop_event.set()

        signal.signal(signal.SIGINT, on_signal)
        signal.signal(signal.SIGTERM, on_signal)

        logger.info("✅ Демон запущен, ожидание сигнала завершения")
        while not stop_event.wait(1.0):
            pass
        return 0

    except (OSError, SupervisorError) as e:
        logger.critical(f"Критическая ошибка при запуске: {e}")
        return 1

    finally:
        if coordinator is not None:
            logger.info("🛑 Завершение работы")
            try:
                coordinator.shutdown()
            except SupervisorError as e:
                logger.error(f"Ошибка при остановке: {e}")
        instance_lock.unlock()


if __name__ == "__main__":
    sys.exit(main())
