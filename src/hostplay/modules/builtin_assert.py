"""
Hostplay assert module

Assert conditions during playbook execution.
"""

from hostplay.engine.playbook import ensure_list
from hostplay.engine.templating import get_template_engine
from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    Useful for validating state before proceeding with tasks.
    """

    name = "assert"
    needs_connection = False
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }

    async def run(self) -> ModuleOutcome:
        """Evaluate assertions."""
        conditions = ensure_list(self.args["that"])
        fail_msg = self.get_arg("fail_msg") or self.get_arg("msg")
        engine = get_template_engine()

        for condition in conditions:
            evaluation = engine.evaluate_condition(condition, self.context.variables)
            if not evaluation.ok:
                return ModuleOutcome(
                    failed=True,
                    msg=str(evaluation.error),
                    data={"assertion": condition, "evaluated_to": False},
                )
            if not evaluation.value:
                return ModuleOutcome(
                    failed=True,
                    msg=fail_msg or "Assertion failed",
                    data={"assertion": condition, "evaluated_to": False},
                )

        success_msg = self.get_arg("success_msg") or "All assertions passed"
        return ModuleOutcome(msg="" if self.get_arg("quiet") else success_msg)
