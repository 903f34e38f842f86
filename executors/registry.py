"""Executor factory registry for tapfarm.

Maps executor names (the ``EXECUTOR`` setting) to their implementing classes.
The browser-backed executor is registered as a dotted-path string and
resolved lazily so ``--dry-run`` never imports Playwright.

Usage::

    from executors.registry import create_executor

    executor = create_executor(settings)
"""

import importlib
from typing import Dict, Optional, Union

from core.config import ConfigurationError, FarmSettings
from executors.base import JobExecutor
from executors.simulated import SimulatedExecutor

# Values are either a class reference or a lazily resolved
# ``"module.ClassName"`` string.
EXECUTOR_REGISTRY: Dict[str, Union[type, str]] = {
    "page": "executors.page.PageExecutor",
    "browser": "executors.page.PageExecutor",
    "simulated": SimulatedExecutor,
    "dry_run": SimulatedExecutor,
}


def get_executor_class(name: str) -> Optional[type]:
    """Resolve an executor class by name (case-insensitive).

    Returns:
        The executor class, or ``None`` if *name* is not registered.
    """
    cls_or_str = EXECUTOR_REGISTRY.get(name.lower().replace("-", "_"))
    if not cls_or_str:
        return None

    if isinstance(cls_or_str, str):
        module_path, class_name = cls_or_str.rsplit('.', 1)
        module = importlib.import_module(module_path)
        return getattr(module, class_name)

    return cls_or_str


def create_executor(settings: FarmSettings, name: Optional[str] = None) -> JobExecutor:
    """Build the executor named by *name* (default: ``settings.executor``).

    Raises:
        ConfigurationError: Unknown executor name.
    """
    executor_name = name or settings.executor
    cls = get_executor_class(executor_name)
    if cls is None:
        known = ", ".join(sorted(EXECUTOR_REGISTRY))
        raise ConfigurationError(f"Unknown executor '{executor_name}' (known: {known})")
    return cls.from_settings(settings)
