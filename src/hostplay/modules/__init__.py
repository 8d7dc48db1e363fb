"""
Hostplay Modules

Built-in modules and the default module invoker.
"""

from hostplay.modules.base import (
    Module,
    ModuleContext,
    ModuleInvoker,
    ModuleOutcome,
    RegistryInvoker,
    get_module,
    list_modules,
)

__all__ = [
    'Module',
    'ModuleContext',
    'ModuleInvoker',
    'ModuleOutcome',
    'RegistryInvoker',
    'get_module',
    'list_modules',
]
