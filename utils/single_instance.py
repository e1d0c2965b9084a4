# utils/single_instance.py
import logging
import os
from pathlib import Path
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "tproxy_supervisor.lock"


class SingleInstance:
    """
    Единственный экземпляр демона.
    Файловая блокировка с PID владельца: два демона над одними правилами недопустимы.
    """

    def __init__(self, lock_dir: Optional[Path] = None, lockfile_name: str = LOCKFILE_NAME):
        if lock_dir is None:
            from core.config_manager import get_app_data_dir
            lock_dir = get_app_data_dir()
        self.lockfile = Path(lock_dir) / lockfile_name
        self.locked = False

    def lock(self, _retry: bool = True) -> bool:
        """Захватывает файловую блокировку"""
        try:
            self.lockfile.parent.mkdir(parents=True, exist_ok=True)
            handle = os.open(self.lockfile, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            owner = self.owner_pid()
            if owner is not None and owner != os.getpid() and psutil.pid_exists(owner):
                logger.warning(f"⚠️ Демон уже запущен (PID {owner}, блокировка {self.lockfile})")
                return False
            if not _retry:
                return False
            # Владелец мертв
            try:
                self.lockfile.unlink()
                logger.info("🗑️ Удален старый файл блокировки")
            except OSError as e:
                logger.error(f"❌ Не удалось удалить старый файл блокировки: {e}")
                return False
            return self.lock(_retry=False)
        except OSError as e:
            logger.error(f"❌ Ошибка файловой блокировки: {e}")
            return False

        try:
            os.write(handle, str(os.getpid()).encode())
        finally:
            os.close(handle)

        self.locked = True
        logger.info(f"✅ Файловая блокировка создана: {self.lockfile}")
        return True

    def owner_pid(self) -> Optional[int]:
        """PID процесса, создавшего файл блокировки"""
        try:
            pid_str = self.lockfile.read_text().strip()
        except OSError:
            return None
        return int(pid_str) if pid_str.isdigit() else None

    def unlock(self):
        """Освобождает файловую блокировку"""
        if not self.locked:
            return
        try:
            self.lockfile.unlink()
            logger.debug(f"🔓 Файловая блокировка удалена: {self.lockfile}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Ошибка при удалении файла блокировки: {e}")
        finally:
            self.locked = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unlock()
