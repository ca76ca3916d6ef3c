"""
Backup module for backvault.

This module handles the core backup functionality including:
- Database dumps (dumpers)
- File collection (collector)
- Archive assembly (compression)
- Storage backends (local, S3 and SFTP)
- Run orchestration (orchestrator)
- Retention policy enforcement (retention)
- Health monitoring (monitor)

Submodules are imported directly (``from backvault.backup.orchestrator
import BackupOrchestrator``).
"""
