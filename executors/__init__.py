"""
Executors module for tapfarm.

An executor performs one job attempt for one key and reports an
:class:`core.models.Outcome`.  The dispatcher treats it as a black box.

Submodules:
    base: ``JobExecutor`` abstract base, ``ExecutionFailure`` exception.
    page: ``PageExecutor`` – one Chromium session per attempt.
    simulated: ``SimulatedExecutor`` – sleep-and-report stand-in for dry runs.
    registry: name -> executor class factory.
"""
