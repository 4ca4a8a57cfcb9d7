"""Flotilla CLI: Typer-based command-line interface.

Provides the ``flotilla`` command with ``resolve-tag``, ``build`` and
``deploy`` subcommands.  All output uses Rich for formatted terminal
display.

Exit codes
----------
0  success
1  build failure (a stage failed, was blocked, or could not be published)
2  orchestration failure (a service failed or was left blocked)
3  invalid descriptor (malformed file, cycle, unknown dependency)
"""

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_DEPLOY_FAILED = 2
EXIT_INVALID_DESCRIPTOR = 3
