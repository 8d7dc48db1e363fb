"""
Hostplay set_fact module

Set host variables during playbook execution.
"""

from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class SetFactModule(Module):
    """
    Set host variables from a task.

    The module only reports the values under ``ansible_facts``; the
    scheduler stores them in the host's overlay, so they are visible to
    later tasks on the same host only.
    """

    name = "set_fact"
    needs_connection = False
    required_args = []
    optional_args = {
        "cacheable": False,
    }

    def validate_args(self):
        if not [k for k in self.args if k != 'cacheable']:
            return "set_fact requires at least one variable"
        return None

    async def run(self) -> ModuleOutcome:
        """Set the facts."""
        facts = {k: v for k, v in self.args.items() if k != "cacheable"}
        before = {k: self.context.variables[k] for k in facts if k in self.context.variables}
        return ModuleOutcome(
            changed=False,  # set_fact is not considered a change
            data={"ansible_facts": facts},
            diff={"before": before, "after": facts} if self.context.diff_mode else None,
        )
