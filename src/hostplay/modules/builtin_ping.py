"""
Hostplay ping module

A trivial test module that returns 'pong' once the host is reachable.
"""

from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class PingModule(Module):
    """
    Verify that a host is reachable and can run commands.

    ``data: crash`` makes the module fail, for testing failure handling.
    """

    name = "ping"
    required_args = []
    optional_args = {
        "data": "pong",
    }

    async def run(self) -> ModuleOutcome:
        """Return pong (or custom data)."""
        data = self.get_arg("data", "pong")
        if data == "crash":
            return ModuleOutcome(failed=True, msg="boom")

        result = await self.connection.run("true", shell=True)
        if not result.success:
            return ModuleOutcome(failed=True, rc=result.rc, stderr=result.stderr, msg="ping failed")
        return ModuleOutcome(data={"ping": data})
