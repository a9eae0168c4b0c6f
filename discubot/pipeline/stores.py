"""
Record Stores

CRUD interfaces for source configs and jobs, with in-memory and JSON-file
implementations. The durable database behind a real deployment only has
to implement these interfaces.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from ..common.schemas import Job, SourceConfig

logger = logging.getLogger("discubot.pipeline.stores")


class ConfigStore(ABC):
    @abstractmethod
    async def get(self, config_id: str) -> Optional[SourceConfig]:
        pass

    @abstractmethod
    async def find_active(self, team_id: str, source_type: str) -> Optional[SourceConfig]:
        """The active config for a team and source type"""

    @abstractmethod
    async def save(self, config: SourceConfig) -> None:
        pass

    @abstractmethod
    def list(self) -> List[SourceConfig]:
        pass

    def find_by_email_slug(self, slug: str) -> Optional[SourceConfig]:
        slug = (slug or "").lower()
        for config in self.list():
            if config.active and config.email_slug and config.email_slug.lower() == slug:
                return config
        return None

    def find_by_workspace(self, source_type: str, workspace_id: str) -> Optional[SourceConfig]:
        for config in self.list():
            if config.active and config.source_type == source_type and config.workspace_id == workspace_id:
                return config
        return None


class JobStore(ABC):
    @abstractmethod
    async def create(self, job: Job) -> Job:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def save(self, job: Job) -> None:
        pass

    @abstractmethod
    async def list(self, status: Optional[str] = None) -> List[Job]:
        pass


class InMemoryConfigStore(ConfigStore):
    def __init__(self, configs: Optional[List[SourceConfig]] = None):
        self._configs: Dict[str, SourceConfig] = {c.id: c for c in configs or []}

    async def get(self, config_id: str) -> Optional[SourceConfig]:
        return self._configs.get(config_id)

    async def find_active(self, team_id: str, source_type: str) -> Optional[SourceConfig]:
        for config in self._configs.values():
            if config.team_id == team_id and config.source_type == source_type and config.active:
                return config
        return None

    async def save(self, config: SourceConfig) -> None:
        self._configs[config.id] = config

    def list(self) -> List[SourceConfig]:
        return list(self._configs.values())


class JsonFileConfigStore(InMemoryConfigStore):
    """
    Source configs kept in a JSON list on disk.

    The file is read once at construction and rewritten on save.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        super().__init__(self._load())

    def _load(self) -> List[SourceConfig]:
        if not self._path.exists():
            return []
        try:
            with open(self._path) as f:
                data = json.load(f)
            return [SourceConfig.model_validate(item) for item in data]
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning("Failed to load source configs from %s: %s", self._path, e)
            return []

    async def save(self, config: SourceConfig) -> None:
        await super().save(config)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump([c.model_dump(mode="json") for c in self.list()], f, indent=2)
        self._path.chmod(0o600)


class InMemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = Job.from_dict(job.to_dict())
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        # Hand out copies so callers cannot mutate stored state behind save()
        return Job.from_dict(job.to_dict()) if job else None

    async def save(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = Job.from_dict(job.to_dict())

    async def list(self, status: Optional[str] = None) -> List[Job]:
        return [
            Job.from_dict(j.to_dict()) for j in self._jobs.values()
            if status is None or j.status == status
        ]


class JsonFileJobStore(InMemoryJobStore):
    """Jobs persisted to a JSON file after every write"""

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                data = json.load(f)
            self._jobs = {item["id"]: Job.from_dict(item) for item in data}
        except (json.JSONDecodeError, IOError, KeyError, TypeError) as e:
            logger.warning("Failed to load jobs from %s: %s", self._path, e)
            self._jobs = {}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump([j.to_dict() for j in self._jobs.values()], f, indent=2, default=str)

    async def create(self, job: Job) -> Job:
        await super().create(job)
        self._flush()
        return job

    async def save(self, job: Job) -> None:
        await super().save(job)
        self._flush()
