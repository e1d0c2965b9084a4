# core/engine_supervisor.py
import collections
import logging
import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from core.errors import InvalidStateError, ProcessStartError, ProcessTimeoutError
from core.models import EngineConfig, ProcessExit, SupervisorState
from core.readiness import PortReadiness
from utils.port_utils import check_port_availability
from utils.process_manager import ProcessManager

logger = logging.getLogger(__name__)
engine_logger = logging.getLogger("engine")

OUTPUT_TAIL_LINES = 200
DIAGNOSTIC_LINES = 20


def resolve_binary(binary) -> Optional[str]:
    """Путь к бинарнику движка: явный путь или поиск в PATH"""
    path = Path(binary)
    if path.is_file():
        return str(path)
    return shutil.which(str(binary))


class ProcessHandle:
    """Живой процесс движка. Принадлежит только EngineSupervisor"""

    def __init__(self, process: subprocess.Popen, config: EngineConfig, generation: int):
        self.process = process
        self.pid = process.pid
        self.config = config
        self.generation = generation
        self.started_at = time.time()
        self.state = SupervisorState.STARTING
        # Токен отмены: выставлен - значит завершение запросили мы сами
        self.cancel = threading.Event()
        self.exited = threading.Event()
        self.returncode: Optional[int] = None
        self.reader: Optional[threading.Thread] = None
        self.watcher: Optional[threading.Thread] = None
        self._output = collections.deque(maxlen=OUTPUT_TAIL_LINES)
        self._output_lock = threading.Lock()

    def append_output(self, line: str):
        with self._output_lock:
            self._output.append(line)

    def output_lines(self) -> List[str]:
        with self._output_lock:
            return list(self._output)

    def output_tail(self, lines: int = DIAGNOSTIC_LINES) -> str:
        tail = self.output_lines()[-lines:]
        return "\n".join(tail) if tail else "(движок ничего не вывел)"

    def exit_info(self, expected: bool) -> ProcessExit:
        return ProcessExit(
            pid=self.pid,
            returncode=self.returncode,
            generation=self.generation,
            expected=expected,
            output_tail=self.output_tail(),
        )


class EngineSupervisor:
    """
    Жизненный цикл внешнего процесса движка.

    Stopped -> Starting -> Running -> Stopping -> Stopped
    Starting/Running -> Failed при таймауте или неожиданном завершении.
    Все переходы выполняются под одним Condition.
    """

    def __init__(self, binary, args: Sequence[str] = ("run", "-c", "{config}"),
                 readiness: Optional[Callable] = None,
                 startup_timeout: float = 10.0,
                 stop_timeout: float = 5.0,
                 kill_timeout: float = 3.0,
                 poll_interval: float = 0.1,
                 check_ports: bool = True,
                 env: Optional[dict] = None,
                 process_manager: Optional[ProcessManager] = None):
        self.binary = binary
        self.args = tuple(args)
        self.readiness = readiness or PortReadiness()
        self.startup_timeout = startup_timeout
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval
        self.check_ports = check_ports
        self.env = env
        self.process_manager = process_manager or ProcessManager()

        self._cond = threading.Condition()
        self._state = SupervisorState.STOPPED
        self._handle: Optional[ProcessHandle] = None
        self._generation = 0
        self._exit_callback: Optional[Callable[[ProcessExit], None]] = None
        self.last_exit: Optional[ProcessExit] = None

    # --- Состояние ---

    @property
    def state(self) -> SupervisorState:
        with self._cond:
            return self._state

    @property
    def is_running(self) -> bool:
        with self._cond:
            return self._state == SupervisorState.RUNNING

    @property
    def current_config(self) -> Optional[EngineConfig]:
        with self._cond:
            return self._handle.config if self._handle else None

    @property
    def pid(self) -> Optional[int]:
        with self._cond:
            return self._handle.pid if self._handle else None

    @property
    def generation(self) -> Optional[int]:
        """Номер текущего процесса (растет с каждым запуском)"""
        with self._cond:
            return self._handle.generation if self._handle else None

    def set_exit_callback(self, callback: Optional[Callable[[ProcessExit], None]]):
        """Колбэк на неожиданное завершение движка в состоянии Running"""
        self._exit_callback = callback

    def _set_state(self, state: SupervisorState):
        logger.debug(f"Состояние движка: {self._state.value} -> {state.value}")
        self._state = state
        if self._handle is not None:
            self._handle.state = state
        self._cond.notify_all()

    # --- Запуск ---

    def build_command(self, config: EngineConfig, binary_path: Optional[str] = None) -> List[str]:
        binary_path = binary_path or str(self.binary)
        return [binary_path] + [arg.format(config=str(config.config_path)) for arg in self.args]

    def _preflight(self, config: EngineConfig) -> List[str]:
        binary_path = resolve_binary(self.binary)
        if not binary_path:
            raise ProcessStartError(
                f"Бинарник движка не найден: {self.binary}",
                "Проверьте путь engine.binary в настройках",
            )

        if not Path(config.config_path).is_file():
            raise ProcessStartError(
                f"Файл конфигурации движка не найден: {config.config_path}",
            )

        if self.check_ports:
            for port in config.ports.all_ports():
                port_available, port_message = check_port_availability(port)
                if not port_available:
                    raise ProcessStartError(
                        f"Не удалось запустить движок на порту {port}",
                        f"Причина: {port_message}\n"
                        f"Закройте программу, использующую порт {port}",
                    )

        return self.build_command(config, binary_path)

    def _launch(self, command: List[str], config: EngineConfig) -> subprocess.Popen:
        kwargs = {}
        if os.name == 'nt':
            kwargs['creationflags'] = subprocess.CREATE_NO_WINDOW
        else:
            # Ctrl+C в терминале не должен доходить до движка в обход супервизора
            kwargs['start_new_session'] = True

        try:
            return subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=str(Path(config.config_path).parent),
                env=self.env,
                text=True,
                encoding='utf-8',
                errors='replace',
                bufsize=1,
                **kwargs
            )
        except OSError as e:
            raise ProcessStartError(f"Не удалось запустить движок {command[0]}", str(e))

    def start(self, config: EngineConfig) -> None:
        """
        Запускает движок и ждет готовности.

        Допустим только из Stopped или Failed. При таймауте или раннем
        завершении процесс убирается, состояние - Failed.
        """
        with self._cond:
            if self._state not in (SupervisorState.STOPPED, SupervisorState.FAILED):
                raise InvalidStateError(
                    f"Нельзя запустить движок в состоянии {self._state.value}",
                    "Сначала остановите текущий процесс",
                )

            try:
                command = self._preflight(config)
                process = self._launch(command, config)
            except ProcessStartError as e:
                logger.error(f"❌ {e.message}")
                self._set_state(SupervisorState.FAILED)
                raise

            self._generation += 1
            handle = ProcessHandle(process, config, self._generation)
            self._handle = handle
            self._set_state(SupervisorState.STARTING)
            self._start_threads(handle)

        logger.info(f"🚀 Движок запущен: PID {handle.pid}, {' '.join(command)}")
        self._wait_ready(handle)

    def _start_threads(self, handle: ProcessHandle):
        handle.reader = threading.Thread(
            target=self._read_output, args=(handle,),
            name=f"engine-output-{handle.pid}", daemon=True,
        )
        handle.watcher = threading.Thread(
            target=self._watch, args=(handle,),
            name=f"engine-watcher-{handle.pid}", daemon=True,
        )
        handle.reader.start()
        handle.watcher.start()

    def _probe(self, handle: ProcessHandle) -> bool:
        try:
            return bool(self.readiness(handle))
        except Exception as e:
            logger.debug(f"Проверка готовности {self.readiness!r} упала: {e}")
            return False

    def _wait_ready(self, handle: ProcessHandle):
        deadline = time.monotonic() + self.startup_timeout

        while True:
            ready = self._probe(handle)

            with self._cond:
                if self._handle is not handle or self._state != SupervisorState.STARTING:
                    raise ProcessStartError(
                        "Запуск движка прерван остановкой",
                        handle.output_tail(),
                    )

                if handle.exited.is_set():
                    self.last_exit = handle.exit_info(expected=False)
                    self._set_state(SupervisorState.FAILED)
                    self._handle = None
                    logger.error(f"❌ Движок завершился при запуске с кодом {handle.returncode}")
                    raise ProcessStartError(
                        f"Движок завершился при запуске (код {handle.returncode})",
                        handle.output_tail(),
                    )

                if ready:
                    self._set_state(SupervisorState.RUNNING)
                    logger.info(f"✅ Движок готов: PID {handle.pid}, порты {list(handle.config.ports.all_ports())}")
                    return

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    handle.cancel.set()
                    break

                self._cond.wait(min(self.poll_interval, remaining))

        logger.error(f"❌ Движок не стал готов за {self.startup_timeout} с")
        self._terminate(handle, graceful=True)
        with self._cond:
            if self._handle is handle:
                self._set_state(SupervisorState.FAILED)
                self._handle = None
        raise ProcessTimeoutError(
            f"Движок не стал готов за {self.startup_timeout} с ({self.readiness!r})",
            handle.output_tail(),
        )

    # --- Фоновые потоки ---

    def _read_output(self, handle: ProcessHandle):
        stream = handle.process.stdout
        if stream is None:
            return
        try:
            for line in stream:
                line = line.rstrip()
                if line:
                    handle.append_output(line)
                    engine_logger.debug(line)
        except (OSError, ValueError) as e:
            logger.debug(f"Чтение вывода движка прервано: {e}")
        finally:
            stream.close()

    def _watch(self, handle: ProcessHandle):
        returncode = handle.process.wait()
        if handle.reader is not None:
            # Дочитываем хвост вывода для диагностики
            handle.reader.join(timeout=1.0)

        unexpected = False
        with self._cond:
            handle.returncode = returncode
            handle.exited.set()
            if (self._handle is handle and self._state == SupervisorState.RUNNING
                    and not handle.cancel.is_set()):
                unexpected = True
                self._set_state(SupervisorState.FAILED)
                self._handle = None
            exit_info = handle.exit_info(expected=not unexpected)
            if self._handle is None or self._handle is handle:
                self.last_exit = exit_info
            self._cond.notify_all()

        if not unexpected:
            logger.info(f"Движок PID {handle.pid} завершился с кодом {returncode}")
            return

        logger.error(f"❌ Движок PID {handle.pid} неожиданно завершился с кодом {returncode}")
        logger.error(f"Последний вывод движка:\n{exit_info.output_tail}")
        callback = self._exit_callback
        if callback is not None:
            try:
                callback(exit_info)
            except Exception:
                logger.exception("❌ Ошибка в обработчике завершения движка")

    # --- Остановка ---

    def stop(self, graceful: bool = True) -> None:
        """Останавливает движок из любого состояния; всегда заканчивается в Stopped"""
        with self._cond:
            if self._state == SupervisorState.STOPPED:
                return

            if self._state == SupervisorState.FAILED:
                self._set_state(SupervisorState.STOPPED)
                return

            if self._state == SupervisorState.STOPPING:
                # Остановку уже выполняет другой поток
                self._wait_other_stop()
                return

            handle = self._handle
            handle.cancel.set()
            self._set_state(SupervisorState.STOPPING)

        logger.info(f"🛑 Останавливаем движок PID {handle.pid}...")
        try:
            self._terminate(handle, graceful)
        finally:
            with self._cond:
                # Чужой поток мог уже закончить остановку за нас
                if self._handle is handle:
                    self._set_state(SupervisorState.STOPPED)
                    self._handle = None
        logger.info("✅ Движок остановлен")

    def _wait_other_stop(self):
        """Ждет чужую остановку; если она затянулась - добивает процесс сам. Вызывать под _cond"""
        timeout = self.stop_timeout + self.kill_timeout + 1
        while not self._cond.wait_for(lambda: self._state != SupervisorState.STOPPING, timeout=timeout):
            handle = self._handle
            if handle is not None and not handle.exited.is_set():
                self._cond.release()
                try:
                    self._force_kill(handle)
                    handle.exited.wait(self.kill_timeout)
                finally:
                    self._cond.acquire()
                if self._state != SupervisorState.STOPPING:
                    return

            if handle is None or handle.exited.is_set():
                logger.warning("⚠️ Процесс завершен, а остановка не закончена - переводим в Stopped")
                self._set_state(SupervisorState.STOPPED)
                if self._handle is handle:
                    self._handle = None
                return

    def _terminate(self, handle: ProcessHandle, graceful: bool):
        if handle.exited.is_set():
            return

        if graceful:
            try:
                handle.process.terminate()
            except OSError as e:
                logger.debug(f"terminate() PID {handle.pid}: {e}")

            # Второй, независимый таймер: по истечении stop_timeout - kill
            timer = threading.Timer(self.stop_timeout, self._force_kill, args=(handle,))
            timer.daemon = True
            timer.start()
            try:
                exited = handle.exited.wait(self.stop_timeout + self.kill_timeout)
            finally:
                timer.cancel()
        else:
            self._force_kill(handle)
            exited = handle.exited.wait(self.kill_timeout)

        if not exited:
            logger.critical(f"❌ Движок PID {handle.pid} не завершился даже после kill")
            self._force_kill(handle)
            handle.exited.wait(self.kill_timeout)

    def _force_kill(self, handle: ProcessHandle):
        if handle.exited.is_set():
            return
        logger.warning(f"⚠️ Движок PID {handle.pid} не завершился штатно, убиваем принудительно")
        self.process_manager.kill_children(handle.pid, timeout=self.kill_timeout)
        try:
            handle.process.kill()
        except OSError as e:
            logger.debug(f"kill() PID {handle.pid}: {e}")

    # --- Статус ---

    def get_status(self) -> dict:
        """Возвращает статус"""
        with self._cond:
            handle = self._handle
            status = {
                'state': self._state.value,
                'running': self._state == SupervisorState.RUNNING,
                'pid': handle.pid if handle else None,
                'generation': handle.generation if handle else None,
                'config': str(handle.config.config_path) if handle else None,
                'ports': handle.config.ports.to_dict() if handle else None,
                'uptime': round(time.time() - handle.started_at, 1) if handle else None,
                'is_admin': self.process_manager.is_admin,
            }
            if self.last_exit is not None:
                status['last_exit'] = {
                    'pid': self.last_exit.pid,
                    'returncode': self.last_exit.returncode,
                    'expected': self.last_exit.expected,
                }
        return status
