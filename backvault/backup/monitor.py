"""
Backup health monitoring.

Checks every destination backend for a recent artifact and for total
storage use, and publishes an event when something needs attention.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backvault.notifications import HealthUnhealthy, safe_publish
from .collector import format_size
from .retention import list_artifacts
from .storage import StorageError, create_backends

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    healthy: bool
    issues: List[str] = field(default_factory=list)
    backends: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'issues': list(self.issues),
            'backends': dict(self.backends),
        }


class BackupMonitor:
    """
    Health checks over the artifacts stored on each backend.
    """

    def __init__(self, settings, backends: List, publisher=None, prefix: str = ''):
        """
        Args:
            settings: MonitorSettings (max_age_days, max_storage_mb)
            backends: Storage backends to check
            publisher: EventPublisher notified when unhealthy
            prefix: Artifact filename prefix used on the backends
        """
        self.settings = settings
        self.backends = backends
        self.publisher = publisher
        self.prefix = prefix

    def check(self, now: Optional[datetime] = None) -> HealthReport:
        """
        Check every backend.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            HealthReport; unhealthy when any issue was found
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        issues = []
        details = {}

        for backend in self.backends:
            backend_issues, info = self._check_backend(backend, now)
            issues.extend(backend_issues)
            details[backend.name] = info

        report = HealthReport(healthy=not issues, issues=issues, backends=details)

        if report.healthy:
            logger.info("All backups are healthy")
        else:
            logger.warning(f"Backup health check found {len(issues)} issue(s)")
            message = "Backup health check failed:\n" + "\n".join(issues)
            safe_publish(self.publisher, HealthUnhealthy(message=message, issues=list(issues)))

        return report

    def _check_backend(self, backend, now: datetime):
        issues = []
        info = {'accessible': False, 'count': 0, 'total_size': 0, 'newest': None}

        try:
            accessible = backend.exists('')
        except StorageError as e:
            issues.append(f"Error checking backend '{backend.name}': {e}")
            return issues, info

        if not accessible:
            issues.append(f"Backend '{backend.name}' is not accessible")
            return issues, info
        info['accessible'] = True

        artifacts = list_artifacts(backend, self.prefix)
        if not artifacts:
            issues.append(f"No backups found on backend '{backend.name}'")
            return issues, info

        newest = max(artifacts, key=lambda a: a.timestamp)
        total_size = sum(a.size for a in artifacts)
        info.update({
            'count': len(artifacts),
            'total_size': total_size,
            'human_size': format_size(total_size),
            'newest': newest.timestamp.isoformat(),
        })

        age_hours = (now - newest.timestamp).total_seconds() / 3600
        if age_hours > self.settings.max_age_days * 24:
            issues.append(
                f"Latest backup on backend '{backend.name}' is {int(age_hours // 24)} days old "
                f"(exceeds {self.settings.max_age_days} day limit)"
            )

        if total_size > self.settings.max_storage_mb * 1024 * 1024:
            issues.append(
                f"Backups on backend '{backend.name}' use {format_size(total_size)} "
                f"(exceeds {self.settings.max_storage_mb} MB limit)"
            )

        return issues, info


def check_backup_health(settings, publisher=None, now: Optional[datetime] = None) -> HealthReport:
    """
    Run the health checks against every configured destination.

    Args:
        settings: BackupSettings instance
        publisher: EventPublisher notified when unhealthy

    Returns:
        HealthReport
    """
    backends = create_backends(settings.destinations, settings.destination_disks)
    monitor = BackupMonitor(settings.monitor, backends, publisher, prefix=settings.filename_prefix)
    return monitor.check(now=now)
