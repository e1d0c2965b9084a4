# utils/command_executor.py
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# Код возврата, который шелл отдает для несуществующей команды
COMMAND_NOT_FOUND = 127

Runner = Callable[[Sequence[str], float], subprocess.CompletedProcess]


@dataclass(frozen=True)
class CommandCheck:
    """Проверочная команда: успешна при коде 0 и (опционально) наличии expect в stdout"""
    argv: Tuple[str, ...]
    expect: Optional[str] = None

    def to_dict(self) -> dict:
        return {'argv': list(self.argv), 'expect': self.expect}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["CommandCheck"]:
        if not data:
            return None
        return cls(argv=tuple(data['argv']), expect=data.get('expect'))


@dataclass(frozen=True)
class CommandStep:
    """
    Один шаг пакета команд.

    skip_if  - для setup: если проверка успешна, объект уже есть, шаг пропускается
    only_if  - для cleanup: шаг выполняется, только если проверка успешна
    tolerate - подстроки вывода, при которых ошибка считается успехом
    """
    argv: Tuple[str, ...]
    description: str = ""
    skip_if: Optional[CommandCheck] = None
    only_if: Optional[CommandCheck] = None
    tolerate: Tuple[str, ...] = ()

    @property
    def display(self) -> str:
        return self.description or " ".join(self.argv)

    def to_dict(self) -> dict:
        return {
            'argv': list(self.argv),
            'description': self.description,
            'skip_if': self.skip_if.to_dict() if self.skip_if else None,
            'only_if': self.only_if.to_dict() if self.only_if else None,
            'tolerate': list(self.tolerate),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommandStep":
        return cls(
            argv=tuple(data['argv']),
            description=data.get('description', ""),
            skip_if=CommandCheck.from_dict(data.get('skip_if')),
            only_if=CommandCheck.from_dict(data.get('only_if')),
            tolerate=tuple(data.get('tolerate', ())),
        )


@dataclass
class CommandResult:
    """Результат выполнения одной команды"""
    argv: Tuple[str, ...]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    skipped: bool = False
    tolerated: bool = False

    @property
    def ok(self) -> bool:
        if self.skipped or self.tolerated:
            return True
        return not self.timed_out and self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Текст для пользователя: что упало и почему"""
        if self.timed_out:
            return f"команда не завершилась за отведенное время ({self.duration:.1f} с)"
        output = (self.stderr or self.stdout or "").strip()
        if not output:
            output = "(нет вывода)"
        return f"код выхода {self.returncode}: {output}"


@dataclass
class BatchResult:
    """Результат пакета: все выполненные шаги и первый упавший (для setup)"""
    results: List[Tuple[CommandStep, CommandResult]] = field(default_factory=list)
    failed: Optional[Tuple[CommandStep, CommandResult]] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def succeeded(self) -> List[CommandStep]:
        return [step for step, result in self.results if result.ok]

    @property
    def errors(self) -> List[Tuple[CommandStep, CommandResult]]:
        return [(step, result) for step, result in self.results if not result.ok]


def _subprocess_runner(argv: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    """Запуск команды без шелла с перехватом вывода"""
    kwargs = {}
    if os.name == 'nt':
        kwargs['creationflags'] = subprocess.CREATE_NO_WINDOW
    return subprocess.run(
        list(argv),
        capture_output=True,
        text=True,
        encoding='utf-8',
        errors='replace',
        timeout=timeout,
        **kwargs
    )


class CommandExecutor:
    """Выполняет команды ОС последовательно, с таймаутом на каждую"""

    def __init__(self, timeout: float = 10.0, runner: Optional[Runner] = None):
        self.timeout = timeout
        self._runner = runner or _subprocess_runner

    def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Выполняет одну команду. Никогда не бросает OS-ошибки наружу"""
        argv = tuple(str(a) for a in argv)
        timeout = timeout or self.timeout
        started = time.monotonic()
        logger.debug(f"$ {' '.join(argv)}")

        try:
            completed = self._runner(argv, timeout)
        except subprocess.TimeoutExpired:
            duration = time.monotonic() - started
            logger.warning(f"⏱️ Таймаут команды ({timeout} с): {' '.join(argv)}")
            return CommandResult(argv=argv, returncode=None, duration=duration, timed_out=True)
        except FileNotFoundError:
            return CommandResult(
                argv=argv,
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{argv[0]}: команда не найдена",
                duration=time.monotonic() - started,
            )
        except OSError as e:
            return CommandResult(
                argv=argv,
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{argv[0]}: {e}",
                duration=time.monotonic() - started,
            )

        return CommandResult(
            argv=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration=time.monotonic() - started,
        )

    def check(self, check: CommandCheck) -> bool:
        result = self.run(check.argv)
        if not result.ok:
            return False
        if check.expect is not None:
            return check.expect in result.stdout
        return True

    def run_step(self, step: CommandStep) -> CommandResult:
        if step.skip_if is not None and self.check(step.skip_if):
            logger.debug(f"⏭️ Уже применено: {step.display}")
            return CommandResult(argv=step.argv, returncode=0, skipped=True)

        if step.only_if is not None and not self.check(step.only_if):
            logger.debug(f"⏭️ Нечего удалять: {step.display}")
            return CommandResult(argv=step.argv, returncode=0, skipped=True)

        result = self.run(step.argv)
        if not result.ok and not result.timed_out and step.tolerate:
            output = f"{result.stdout}\n{result.stderr}"
            if any(marker in output for marker in step.tolerate):
                logger.debug(f"Ошибка допустима для шага '{step.display}': {result.diagnostic}")
                result.tolerated = True
        return result

    def run_batch(self, steps: Sequence[CommandStep], stop_on_error: bool = True) -> BatchResult:
        """
        Выполняет пакет по порядку.

        stop_on_error=True  - политика setup: остановка на первой ошибке
        stop_on_error=False - политика cleanup: выполняем все шаги, собираем ошибки
        """
        batch = BatchResult()
        for step in steps:
            result = self.run_step(step)
            batch.results.append((step, result))

            if result.ok:
                continue

            logger.warning(f"⚠️ Шаг не выполнен: {step.display} ({result.diagnostic})")
            if batch.failed is None:
                batch.failed = (step, result)
            if stop_on_error:
                break

        return batch
