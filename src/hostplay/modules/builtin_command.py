"""
Hostplay command and shell modules

Execute commands on the target host, with or without shell processing.
"""

from typing import Optional

from hostplay.modules.base import Module, ModuleOutcome, register_module


@register_module
class CommandModule(Module):
    """
    Execute commands on target hosts.

    Unlike shell, this module does not process commands through a shell,
    so shell operators and variables won't work.
    """

    name = "command"
    use_shell = False
    required_args = []  # Either _raw_params or cmd
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }

    def validate_args(self) -> Optional[str]:
        if not self.args.get("_raw_params") and not self.args.get("cmd"):
            return "Either free-form command or 'cmd' argument is required"
        return None

    async def run(self) -> ModuleOutcome:
        """Execute the command."""
        cmd = str(self.args.get("_raw_params") or self.args.get("cmd", ""))
        creates = self.get_arg("creates")
        removes = self.get_arg("removes")

        if creates and await self.connection.exists(str(creates)):
            return ModuleOutcome(msg=f"skipped, since {creates} exists", data={"cmd": cmd})
        if removes and not await self.connection.exists(str(removes)):
            return ModuleOutcome(msg=f"skipped, since {removes} does not exist", data={"cmd": cmd})

        if self.context.check_mode:
            return ModuleOutcome(
                changed=True,
                skipped=True,
                msg="command would be executed (check mode)",
                data={"cmd": cmd},
                diff={"before": "", "after": f"Would run: {cmd}"} if self.context.diff_mode else None,
            )

        result = await self.connection.run(
            self.wrap_become(cmd),
            shell=self.use_shell,
            cwd=self.get_arg("chdir"),
            environment=self.context.variables.get("hostplay_environment") or None,
        )

        return ModuleOutcome(
            changed=True,  # Commands always report changed
            rc=result.rc,
            stdout=result.stdout.rstrip("\n"),
            stderr=result.stderr.rstrip("\n"),
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            data={"cmd": cmd},
        )


@register_module
class ShellModule(CommandModule):
    """Execute commands through /bin/sh, so pipes and redirects work."""

    name = "shell"
    use_shell = True
