"""
Generational retention policy for backup artifacts.

Artifacts younger than ``keep_all_days`` are always kept. Older artifacts
fall into consecutive daily, weekly, monthly and yearly windows; inside each
window only the most recent artifact per period (day, ISO week, month,
year) survives. Everything older than the last window is deleted.
"""

import logging
import posixpath
from datetime import datetime, timezone
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from backvault.notifications import CleanupSucceeded, safe_publish
from .storage import StorageError, create_backends

logger = logging.getLogger(__name__)

ARTIFACT_EXTENSIONS = ('.zip', '.zip.enc', '.tar.gz', '.tar.gz.enc')


@dataclass(frozen=True)
class RetentionPolicy:
    keep_all_days: int = 7
    keep_daily_days: int = 16
    keep_weekly_weeks: int = 8
    keep_monthly_months: int = 4
    keep_yearly_years: int = 2
    max_storage_mb: int = 5000

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> 'RetentionPolicy':
        known = {f.name for f in fields(cls)}
        return cls(**{key: int(value) for key, value in options.items() if key in known})

    @property
    def weekly_end_days(self) -> int:
        return self.keep_daily_days + 7 * self.keep_weekly_weeks

    @property
    def monthly_end_days(self) -> int:
        return self.weekly_end_days + 30 * self.keep_monthly_months

    @property
    def yearly_end_days(self) -> int:
        return self.monthly_end_days + 365 * self.keep_yearly_years

    def window_for(self, age_days: int) -> str:
        """
        Name the retention window an artifact of the given age falls into.

        Args:
            age_days: Artifact age in whole days

        Returns:
            One of 'keep_all', 'daily', 'weekly', 'monthly', 'yearly', 'none'
        """
        if age_days < self.keep_all_days:
            return 'keep_all'
        if age_days < self.keep_daily_days:
            return 'daily'
        if age_days < self.weekly_end_days:
            return 'weekly'
        if age_days < self.monthly_end_days:
            return 'monthly'
        if age_days < self.yearly_end_days:
            return 'yearly'
        return 'none'


@dataclass(frozen=True)
class ArtifactInfo:
    path: str
    timestamp: datetime
    size: int = 0


@dataclass(frozen=True)
class RetentionDecision:
    path: str
    keep: bool
    window: str


@dataclass
class RetentionPlan:
    keep: List[ArtifactInfo] = field(default_factory=list)
    delete: List[ArtifactInfo] = field(default_factory=list)
    decisions: List[RetentionDecision] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _period_key(window: str, timestamp: datetime) -> Tuple:
    if window == 'daily':
        return (timestamp.year, timestamp.month, timestamp.day)
    if window == 'weekly':
        iso_year, iso_week, _ = timestamp.isocalendar()
        return (iso_year, iso_week)
    if window == 'monthly':
        return (timestamp.year, timestamp.month)
    return (timestamp.year,)


def plan(artifacts: Iterable[ArtifactInfo], policy: RetentionPolicy,
         now: Optional[datetime] = None) -> RetentionPlan:
    """
    Decide which artifacts to keep and which to delete.

    Pure function: the same listing, policy and ``now`` always give the
    same plan.

    Args:
        artifacts: Artifacts listed from one backend
        policy: Retention policy
        now: Reference time (default: current UTC time)

    Returns:
        RetentionPlan with keep/delete lists and one decision per artifact
    """
    now = _as_utc(now) if now else datetime.now(timezone.utc)

    unique = {}
    for artifact in artifacts:
        unique[artifact.path] = artifact
    ordered = sorted(unique.values(), key=lambda a: (_as_utc(a.timestamp), a.path))

    windows = {}
    buckets: Dict[Tuple, ArtifactInfo] = {}

    for artifact in ordered:
        timestamp = _as_utc(artifact.timestamp)
        age_days = max(0, (now - timestamp).days)
        window = policy.window_for(age_days)
        windows[artifact.path] = window

        if window in ('keep_all', 'none'):
            continue

        # Ascending order, so a later artifact replaces an earlier one
        buckets[(window,) + _period_key(window, timestamp)] = artifact

    kept_paths = {a.path for a in buckets.values()}
    kept_paths.update(path for path, window in windows.items() if window == 'keep_all')

    result = RetentionPlan()
    for artifact in ordered:
        keep = artifact.path in kept_paths
        (result.keep if keep else result.delete).append(artifact)
        result.decisions.append(RetentionDecision(artifact.path, keep, windows[artifact.path]))

    return result


@dataclass
class CleanupResult:
    deleted_count: int = 0
    deleted_bytes: int = 0
    deleted_paths: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deleted_count': self.deleted_count,
            'deleted_bytes': self.deleted_bytes,
            'deleted_paths': list(self.deleted_paths),
            'errors': list(self.errors),
        }


def is_artifact(path: str) -> bool:
    return posixpath.basename(path).endswith(ARTIFACT_EXTENSIONS)


def list_artifacts(backend, prefix: str = '') -> List[ArtifactInfo]:
    """
    List backup artifacts stored on a backend.

    Args:
        backend: StorageBackend instance
        prefix: Only consider paths starting with this prefix

    Returns:
        List of ArtifactInfo; empty if the backend cannot be listed
    """
    try:
        paths = backend.all_files()
    except StorageError as e:
        logger.warning(f"Failed to list artifacts on {backend.name}: {e}")
        return []

    artifacts = []
    for path in paths:
        if not path.startswith(prefix) or not is_artifact(path):
            continue
        try:
            artifacts.append(ArtifactInfo(
                path=path,
                timestamp=_as_utc(backend.last_modified(path)),
                size=backend.size(path)
            ))
        except StorageError as e:
            logger.warning(f"Skipping artifact {path} on {backend.name}: {e}")

    return artifacts


class RetentionManager:
    """
    Applies the retention policy to storage backends.

    Deletion is best effort: a failed delete is recorded and the remaining
    artifacts are still processed.
    """

    def __init__(self, policy: Optional[RetentionPolicy] = None, publisher=None, prefix: str = ''):
        """
        Initialize retention manager.

        Args:
            policy: Default retention policy
            publisher: EventPublisher notified after enforce()
            prefix: Artifact filename prefix used on the backends
        """
        self.policy = policy or RetentionPolicy()
        self.publisher = publisher
        self.prefix = prefix
        self.logs = []

    def cleanup(self, backend, policy: Optional[RetentionPolicy] = None,
                now: Optional[datetime] = None) -> CleanupResult:
        """
        Delete the artifacts the policy does not retain on one backend.

        Args:
            backend: StorageBackend instance
            policy: Override of the manager's policy
            now: Reference time for ages

        Returns:
            CleanupResult for this backend
        """
        policy = policy or self.policy
        artifacts = list_artifacts(backend, self.prefix)
        retention_plan = plan(artifacts, policy, now)

        self._log(
            f"Backend {backend.name}: {len(artifacts)} artifacts, "
            f"keeping {len(retention_plan.keep)}, deleting {len(retention_plan.delete)}"
        )

        result = CleanupResult()
        for artifact in retention_plan.delete:
            try:
                backend.delete(artifact.path)
                result.deleted_count += 1
                result.deleted_bytes += artifact.size
                result.deleted_paths.append(artifact.path)
                self._log(f"Deleted {artifact.path} from {backend.name}")
            except StorageError as e:
                error_msg = f"Failed to delete {artifact.path} from {backend.name}: {e}"
                self._log(error_msg, level=logging.WARNING)
                result.errors.append(error_msg)

        return result

    def enforce(self, backends: Iterable, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run cleanup on every backend and publish the aggregated result.

        Args:
            backends: StorageBackend instances
            now: Reference time for ages

        Returns:
            Dict with summary of cleanup operations:
            {
                'backends': {name: CleanupResult dict},
                'deleted_count': int,
                'deleted_bytes': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement")

        summary = {
            'backends': {},
            'deleted_count': 0,
            'deleted_bytes': 0,
            'errors': []
        }

        for backend in backends:
            try:
                result = self.cleanup(backend, now=now)
            except (StorageError, OSError) as e:
                error_msg = f"Failed to enforce retention on {backend.name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                summary['errors'].append(error_msg)
                continue

            summary['backends'][backend.name] = result.to_dict()
            summary['deleted_count'] += result.deleted_count
            summary['deleted_bytes'] += result.deleted_bytes
            summary['errors'].extend(result.errors)

        self._log(
            f"Retention enforcement complete. "
            f"Backends: {len(summary['backends'])}, "
            f"Deleted: {summary['deleted_count']}, "
            f"Errors: {len(summary['errors'])}"
        )

        safe_publish(self.publisher, CleanupSucceeded(results=dict(summary)))

        summary['logs'] = self.logs
        return summary

    def stats(self, backend) -> Dict[str, Any]:
        """
        Summarise the artifacts on a backend.

        Returns:
            Dict with count, total_size, oldest and newest (ISO strings or None)
        """
        artifacts = sorted(list_artifacts(backend, self.prefix), key=lambda a: a.timestamp)
        return {
            'count': len(artifacts),
            'total_size': sum(a.size for a in artifacts),
            'oldest': artifacts[0].timestamp.isoformat() if artifacts else None,
            'newest': artifacts[-1].timestamp.isoformat() if artifacts else None,
        }

    def exceeds_storage_limit(self, backend, max_storage_mb: Optional[int] = None) -> bool:
        limit = max_storage_mb if max_storage_mb is not None else self.policy.max_storage_mb
        return self.stats(backend)['total_size'] > limit * 1024 * 1024

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies(settings, publisher=None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Enforce the retention policy on every configured destination.

    This function is called by the scheduler and the cleanup endpoint.

    Args:
        settings: BackupSettings instance
        publisher: EventPublisher notified with the summary

    Returns:
        Summary dict from RetentionManager.enforce()
    """
    backends = create_backends(settings.destinations, settings.destination_disks)
    manager = RetentionManager(settings.retention, publisher, prefix=settings.filename_prefix)
    return manager.enforce(backends, now=now)
