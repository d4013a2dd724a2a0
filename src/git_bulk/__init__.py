"""git-bulk: Apply one Git operation to every repository under a directory."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    BaseDirectoryNotFoundError,
    BulkOperation,
    BulkRunner,
    ConfigurationError,
    GitBulkError,
    GitCommandError,
    GitOperations,
    NotARepositoryError,
    Operation,
    OperationOutcome,
    OutcomeKind,
    PruneOperation,
    Reason,
    RepositoryAccessError,
    RepositoryReport,
    RepositoryState,
    RunConfig,
    RunSummary,
    RunSummaryAggregator,
    SwitchOperation,
    SyncOperation,
    ToolNotFoundError,
    app,
    build_run_config,
    discover_repositories,
    inspect_repository,
    run,
)
from .formatters import OutputFormatter, describe_outcome

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    "run",
    # Models
    "Operation",
    "OperationOutcome",
    "OutcomeKind",
    "Reason",
    "RepositoryReport",
    "RepositoryState",
    "RunConfig",
    "RunSummary",
    # Errors
    "BaseDirectoryNotFoundError",
    "ConfigurationError",
    "GitBulkError",
    "GitCommandError",
    "NotARepositoryError",
    "RepositoryAccessError",
    "ToolNotFoundError",
    # Operations
    "BulkOperation",
    "BulkRunner",
    "GitOperations",
    "PruneOperation",
    "RunSummaryAggregator",
    "SwitchOperation",
    "SyncOperation",
    # Functions
    "build_run_config",
    "discover_repositories",
    "inspect_repository",
    # Formatters
    "OutputFormatter",
    "describe_outcome",
]
