import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from .execution.context import create_runner_for_target
from .execution.runner import ExecutionRunner
from .result import Result, ResultSet
from .target import Target
from .task import Task

RunnerFactory = Callable[..., ExecutionRunner]


class Executor:
    """Fans a single action out to many targets, one worker per target.

    Every target yields exactly one ``Result``: adapter faults are logged and
    converted with ``Result.from_exception`` instead of propagating.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        logger: Optional[logging.Logger] = None,
        max_workers: Optional[int] = None,
        runner_factory: RunnerFactory = create_runner_for_target,
    ):
        self.config = config or {}
        self.logger = logger or logging.getLogger(__name__)
        executor_config = self.config.get("executor", {}) or {}
        self.max_workers = max_workers or executor_config.get("max_workers") or 8
        self.default_timeout = executor_config.get("command_timeout")
        self.runner_factory = runner_factory

    def run_command(self, targets: Iterable[Target], command: str, timeout: Optional[float] = None) -> ResultSet:
        timeout = self._timeout(timeout)

        def _run(runner: ExecutionRunner) -> Result:
            output = runner.run_command(command, timeout=timeout)
            return Result.for_command(runner.target, output.stdout, output.stderr, output.exit_code, command)

        return self._batch(targets, "command", _run)

    def run_script(
        self,
        targets: Iterable[Target],
        script: str,
        arguments: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> ResultSet:
        timeout = self._timeout(timeout)
        if not os.path.isfile(script):
            raise FileNotFoundError(f"Script not found: {script}")

        def _run(runner: ExecutionRunner) -> Result:
            output = runner.run_script(script, arguments=arguments, timeout=timeout)
            return Result.for_command(
                runner.target,
                output.stdout,
                output.stderr,
                output.exit_code,
                script,
                action="script",
            )

        return self._batch(targets, "script", _run)

    def run_task(
        self,
        targets: Iterable[Target],
        task: Task,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ResultSet:
        timeout = self._timeout(timeout)
        if arguments is not None and not isinstance(arguments, Mapping):
            raise TypeError("Task arguments must be a mapping")

        def _run(runner: ExecutionRunner) -> Result:
            output = runner.run_task(task, arguments=arguments, timeout=timeout)
            return Result.for_task(runner.target, output.stdout, output.stderr, output.exit_code, task.name)

        return self._batch(targets, "task", _run)

    def upload_file(self, targets: Iterable[Target], source: str, destination: str) -> ResultSet:
        if not os.path.exists(source):
            raise FileNotFoundError(f"Upload source not found: {source}")

        def _run(runner: ExecutionRunner) -> Result:
            runner.upload(source, destination)
            return Result.for_upload(runner.target, source, destination)

        return self._batch(targets, "upload", _run)

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.default_timeout

    def _batch(self, targets: Iterable[Target], action: str, run: Callable[[ExecutionRunner], Result]) -> ResultSet:
        targets = list(targets)
        if not targets:
            return ResultSet()

        self.logger.info("Running %s on %d target(s)", action, len(targets))
        workers = max(1, min(self.max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fleetrun") as pool:
            results = list(pool.map(lambda target: self._run_on_target(target, action, run), targets))

        failed = sum(1 for result in results if not result.ok)
        self.logger.info("Finished %s: %d succeeded, %d failed", action, len(results) - failed, failed)
        return ResultSet(results)

    def _run_on_target(self, target: Target, action: str, run: Callable[[ExecutionRunner], Result]) -> Result:
        try:
            runner = self.runner_factory(target=target, config=self.config, logger=self.logger)
            result = run(runner)
        except Exception as exc:
            self.logger.error("Error running %s on %s: %s", action, target.name, exc, exc_info=True)
            return Result.from_exception(target, exc, action=action)

        self.logger.debug("%s on %s finished with status %s", action, target.name, result.status)
        return result


def summarize(result_set: ResultSet) -> Dict[str, Any]:
    return {
        "status": result_set.status,
        "results": result_set.to_data(),
    }
