"""Deployer that runs the project's configured shell steps in order."""

import subprocess

import structlog

from issue_pipeline.config.settings import DeployConfig
from issue_pipeline.models.domain import DeployResult
from issue_pipeline.providers.base import Deployer
from issue_pipeline.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)


class ShellDeployer(Deployer):
    """Run deploy steps with a per-step timeout, stopping at the first failure.

    Step output (stdout and stderr interleaved) is collected across steps so
    the deploy announcement can show its tail.
    """

    def __init__(self, config: DeployConfig) -> None:
        self.config = config

    async def run(self, steps: list[str]) -> DeployResult:
        outputs: list[str] = []

        for step in steps:
            log.info("deploy_step_started", step=step)
            try:
                stdout, _, _ = await run_shell_command(
                    step, cwd=self.config.working_dir, timeout=self.config.step_timeout
                )
            except subprocess.CalledProcessError as e:
                outputs.append(e.stdout or "")
                log.error("deploy_step_failed", step=step, exit_code=e.returncode)
                return DeployResult(ok=False, output="".join(outputs), failed_step=step, exit_code=e.returncode)
            except TimeoutError:
                outputs.append(f"step timed out after {self.config.step_timeout}s\n")
                log.error("deploy_step_timed_out", step=step, timeout=self.config.step_timeout)
                return DeployResult(ok=False, output="".join(outputs), failed_step=step)
            except OSError as e:
                outputs.append(f"{e}\n")
                log.error("deploy_step_not_started", step=step, error=str(e))
                return DeployResult(ok=False, output="".join(outputs), failed_step=step)

            outputs.append(stdout)

        return DeployResult(ok=True, output="".join(outputs))
