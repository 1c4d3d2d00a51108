"""Step execution mixin for multi-phase passes.

Runs named steps in order, feeding each step the previous step's result,
and prints a colored line per step.
"""

from __future__ import annotations

from typing import Iterable, Callable, Any
from abc import abstractmethod

from colorama import Fore, Style


class PipelineMixin:
    """Mixin for classes that run as a sequence of named steps.

    Usage:
        class MyPass(PipelineMixin):
            STEP_LABEL = 'My Pass'

            def _load_pipeline(self):
                return [
                    ('Step 1', self.step1, {}),
                    ('Step 2', self.step2, {'param': value}),
                ]

            def run(self):
                return self._execute_pipeline()

    A step receives the previous step's result as its first positional
    argument; the first step is called with keyword arguments only.
    """

    # Prefix printed in front of each step line
    STEP_LABEL: str = 'Pipeline'

    @abstractmethod
    def _load_pipeline(self, **pipeline_kwargs: Any) -> Iterable[tuple[str, Callable, dict[str, Any]]]:
        """Define the pipeline steps.

        Returns:
            List of tuples: (step_name, function, kwargs)
        """
        ...

    def _execute_pipeline(self, progress: bool = True, **pipeline_kwargs: Any) -> Any:
        """Execute the pipeline and return the final result.

        Args:
            progress: Whether to print step messages (default: True)
            **pipeline_kwargs: Additional parameters passed to _load_pipeline()

        Returns:
            Result from the final pipeline step
        """
        pipeline = self._load_pipeline(**pipeline_kwargs)
        result = None

        for name, func, kwargs in pipeline:
            try:
                if result is not None:
                    result = func(result, **kwargs)
                else:
                    result = func(**kwargs)
                if progress:
                    self._log_step_success(name)
            except Exception as e:
                if progress:
                    self._log_step_failure(name, e)
                raise

        return result

    def _log_step_success(self, step_name: str) -> None:
        """Print success message for a pipeline step."""
        padding = max(4, 24 - len(step_name))
        print(f'{self.STEP_LABEL} -- {step_name} {"-" * padding}> {Fore.GREEN}Complete{Style.RESET_ALL}')

    def _log_step_failure(self, step_name: str, error: Exception) -> None:
        """Print failure message for a pipeline step."""
        padding = max(4, 24 - len(step_name))
        print(f'{self.STEP_LABEL} -- {step_name} {"-" * padding}> {Fore.RED}Failed{Style.RESET_ALL}: {error}')
