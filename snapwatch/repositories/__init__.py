from snapwatch.repositories.approval_events import InMemoryApprovalEventsRepository, PostgresApprovalEventsRepository
from snapwatch.repositories.diffs import InMemoryDiffsRepository, PostgresDiffsRepository
from snapwatch.repositories.projects import InMemoryProjectsRepository, PostgresProjectsRepository
from snapwatch.repositories.screenshots import InMemoryScreenshotsRepository, PostgresScreenshotsRepository
from snapwatch.repositories.tenant_users import InMemoryTenantUsersRepository, PostgresTenantUsersRepository
from snapwatch.repositories.usage import InMemoryUsageRepository, PostgresUsageRepository

__all__ = [
    "InMemoryApprovalEventsRepository",
    "PostgresApprovalEventsRepository",
    "InMemoryDiffsRepository",
    "PostgresDiffsRepository",
    "InMemoryProjectsRepository",
    "PostgresProjectsRepository",
    "InMemoryScreenshotsRepository",
    "PostgresScreenshotsRepository",
    "InMemoryTenantUsersRepository",
    "PostgresTenantUsersRepository",
    "InMemoryUsageRepository",
    "PostgresUsageRepository",
]
