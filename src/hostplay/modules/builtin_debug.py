"""
Hostplay debug module

Print debug messages during playbook execution.
"""

import json

from hostplay.engine.templating import get_template_engine
from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    ``var`` is evaluated as an expression against the task's variables,
    so dotted paths and filters both work.
    """

    name = "debug"
    needs_connection = False
    required_args = []
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }

    async def run(self) -> ModuleOutcome:
        """Build the debug message."""
        var = self.get_arg("var")

        if var:
            evaluation = get_template_engine().evaluate(str(var), self.context.variables)
            value = evaluation.value if evaluation.ok else "VARIABLE IS NOT DEFINED!"
            if isinstance(value, (dict, list)):
                output = f"{var}: {json.dumps(value, indent=2, default=str)}"
            else:
                output = f"{var}: {value}"
            return ModuleOutcome(msg=output, data={str(var): value})

        msg = self.get_arg("msg")
        output = msg if isinstance(msg, str) else json.dumps(msg, default=str)
        return ModuleOutcome(msg=output)
