from .executor_cmds import register as register_executor

__all__ = [
    "register_executor",
]
