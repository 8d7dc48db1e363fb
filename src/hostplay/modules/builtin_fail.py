"""
Hostplay fail module

Fail the task with a message.
"""

from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class FailModule(Module):
    """
    Fail the task.

    Use this to explicitly fail a host based on conditions.
    """

    name = "fail"
    needs_connection = False
    required_args = []
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> ModuleOutcome:
        """Fail with message."""
        return ModuleOutcome(failed=True, msg=str(self.get_arg("msg")))
