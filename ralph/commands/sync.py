"""
ralph sync - reconcile local todos with the tracker.
"""

from ralph.commands.run import build_orchestrator
from ralph.lib.config import RalphConfig
from ralph.lib.constants import EXIT_ERROR, EXIT_OK
from ralph.lib.output import emit


def cmd_sync(args, config: RalphConfig) -> int:
    report = build_orchestrator(config).sync()
    emit(report.to_dict())
    return EXIT_ERROR if report.errors else EXIT_OK
