# core/errors.py
"""
Ошибки супервизора.

У каждой ошибки есть постоянный kind (по нему ветвится вызывающий код)
и diagnostic - текст для пользователя как есть.

Движок:
    - ProcessStartError: нет бинарника, неверный конфиг, упал до готовности
    - ProcessTimeoutError: не дождались готовности за startup_timeout
    - ProcessExitedUnexpectedly: движок упал во время работы
    - InvalidStateError: операция недопустима в текущем состоянии

Правила:
    - RuleApplyError: команда setup не выполнилась, пакет применен частично
    - RuleCleanupError: одна или несколько команд cleanup не выполнились
    - PlatformUnsupportedError: нет реализации для пары режим/платформа

Координатор:
    - BusyError: параллельный запрос отклонен
"""

from typing import Any, Dict, List, Optional, Sequence


class SupervisorError(Exception):
    """Базовая ошибка супервизора"""

    kind = "supervisor_error"

    def __init__(self, message: str, diagnostic: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.diagnostic = diagnostic

    def to_dict(self) -> Dict[str, Any]:
        """Структурированный вид для статуса: kind и текст"""
        return {
            'kind': self.kind,
            'message': self.message,
            'diagnostic': self.diagnostic,
        }

    def __str__(self) -> str:
        if self.diagnostic:
            return f"{self.message}\n{self.diagnostic}"
        return self.message


class ProcessStartError(SupervisorError):
    kind = "process_start_error"


class ProcessTimeoutError(ProcessStartError):
    kind = "process_timeout_error"


class ProcessExitedUnexpectedly(SupervisorError):
    kind = "process_exited_unexpectedly"

    def __init__(self, message: str, diagnostic: str = "", returncode: Optional[int] = None) -> None:
        super().__init__(message, diagnostic)
        self.returncode = returncode


class InvalidStateError(SupervisorError):
    kind = "invalid_state"


class RuleApplyError(SupervisorError):
    """
    Команда setup завершилась ошибкой.

    command - argv упавшей команды, applied - описания шагов,
    выполненных до нее.
    """

    kind = "rule_apply_error"

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        command: Sequence[str] = (),
        applied: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, diagnostic)
        self.command = list(command)
        self.applied = applied or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['command'] = " ".join(self.command)
        data['applied'] = list(self.applied)
        return data


class RuleCleanupError(SupervisorError):
    """Часть команд cleanup не выполнилась; failures - список пар (команда, диагностика)"""

    kind = "rule_cleanup_error"

    def __init__(self, message: str, failures: Optional[List[tuple]] = None) -> None:
        self.failures = failures or []
        diagnostic = "\n".join(f"$ {' '.join(cmd)}: {text}" for cmd, text in self.failures)
        super().__init__(message, diagnostic)


class PlatformUnsupportedError(SupervisorError):
    kind = "platform_unsupported"

    def __init__(self, mode, platform) -> None:
        mode_name = getattr(mode, 'value', mode)
        platform_name = getattr(platform, 'value', platform)
        super().__init__(
            f"Режим {mode_name} не поддерживается на платформе {platform_name}",
        )
        self.mode = mode
        self.platform = platform


class BusyError(SupervisorError):
    kind = "busy"
