# utils/process_manager.py
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

logger = logging.getLogger(__name__)


class ProcessManager:
    def __init__(self):
        self.is_admin = self._check_admin_rights()

    def _check_admin_rights(self) -> bool:
        """Проверяет, запущено ли приложение с правами администратора (root)"""
        if hasattr(os, 'geteuid'):
            return os.geteuid() == 0
        try:
            import ctypes
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False

    def get_process_info(self, exe_path) -> List[Dict]:
        """Возвращает информацию о всех процессах, запущенных из указанного файла"""
        target = Path(exe_path).resolve()
        processes = []
        for proc in psutil.process_iter(['pid', 'name', 'username', 'exe', 'cmdline']):
            try:
                exe = proc.info.get('exe')
                if not exe or Path(exe).resolve() != target:
                    continue
                processes.append({
                    'pid': proc.info['pid'],
                    'name': proc.info['name'],
                    'username': proc.info.get('username') or 'N/A',
                    'exe': exe,
                    'cmdline': proc.info.get('cmdline') or [],
                    'can_manage': self._can_manage_process(proc),
                })
            except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
                continue
        return processes

    def _can_manage_process(self, process) -> bool:
        """Проверяет, можем ли мы управлять процессом"""
        if self.is_admin:
            return True  # С правами админа можем управлять любыми процессами

        # Без прав админа - только процессами текущего пользователя
        try:
            return process.username() == psutil.Process().username()
        except (psutil.AccessDenied, psutil.NoSuchProcess):
            return False

    def terminate_process(self, pid: int, force: bool = False, timeout: float = 3.0) -> bool:
        """Завершает процесс по PID вместе с дочерними"""
        try:
            process = psutil.Process(pid)

            if not self._can_manage_process(process):
                logger.warning(f"🚫 Нет прав для завершения процесса PID: {pid}")
                return False

            targets = process.children(recursive=True) + [process]
            for target in targets:
                try:
                    if force:
                        target.kill()
                    else:
                        target.terminate()
                except psutil.NoSuchProcess:
                    continue

            _, alive = psutil.wait_procs(targets, timeout=timeout)
            if alive:
                logger.warning(f"⚠️ Процессы не завершились за {timeout} с: {[p.pid for p in alive]}")
                return False

            logger.info(f"✅ Процесс PID: {pid} {'принудительно ' if force else ''}завершен")
            return True

        except psutil.NoSuchProcess:
            logger.info(f"⚠️ Процесс PID: {pid} уже завершен")
            return True
        except psutil.AccessDenied:
            logger.error(f"❌ Отказано в доступе к процессу PID: {pid}")
            return False

    def kill_children(self, pid: int, timeout: float = 3.0) -> int:
        """Убивает всех потомков процесса; сам процесс не трогает (его ждет Popen)"""
        try:
            children = psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0

        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue
        psutil.wait_procs(children, timeout=timeout)
        if children:
            logger.info(f"✅ Завершено дочерних процессов PID {pid}: {len(children)}")
        return len(children)

    @staticmethod
    def _cmdline_mentions(cmdline: List[str], path) -> bool:
        candidates = {str(Path(path)), str(Path(path).resolve())}
        return any(arg in candidates for arg in cmdline)

    def terminate_stale_engines(self, exe_path, known_pids: Sequence[int] = (),
                                config_path=None, exclude_pid: Optional[int] = None) -> int:
        """
        Завершает процессы движка, оставшиеся от предыдущего запуска.

        Наш процесс - это PID из сохраненного состояния правил или процесс
        с нашим конфигом в командной строке. Чужие экземпляры того же
        бинарника не трогаем.
        """
        terminated_count = 0
        for proc_info in self.get_process_info(exe_path):
            pid = proc_info['pid']
            if pid in (exclude_pid, os.getpid()) or not proc_info['can_manage']:
                continue
            ours = pid in known_pids or (
                config_path is not None and self._cmdline_mentions(proc_info['cmdline'], config_path)
            )
            if not ours:
                logger.debug(f"Процесс движка PID {pid} запущен не нами, пропускаем")
                continue
            logger.warning(f"⚠️ Найден старый процесс движка PID {pid}, завершаем")
            if self.terminate_process(pid) or self.terminate_process(pid, force=True):
                terminated_count += 1
        return terminated_count

    def get_admin_status(self) -> Dict:
        """Возвращает информацию о правах доступа"""
        return {
            'is_admin': self.is_admin,
            'message': 'С правами администратора' if self.is_admin else 'Без прав администратора'
        }
