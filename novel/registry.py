import threading
from functools import lru_cache
from typing import Dict, List, Optional
from loguru import logger


class RunRegistry:
    """
    Process-wide ownership table: at most one active run per project.
    A lease is taken before a run does anything and released exactly once when it ends.
    """

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def try_acquire(self, project_id: str, owner: str) -> bool:
        with self._lock:
            current = self._owners.get(project_id)
            if current is not None:
                logger.warning(f"project {project_id} is already leased by {current}, refusing {owner}")
                return False
            self._owners[project_id] = owner
            logger.debug(f"project {project_id} leased by {owner}")
            return True

    def release(self, project_id: str, owner: str) -> bool:
        with self._lock:
            if self._owners.get(project_id) != owner:
                logger.warning(f"release of {project_id} by {owner} ignored, lease owner is {self._owners.get(project_id)}")
                return False
            del self._owners[project_id]
            logger.debug(f"project {project_id} released by {owner}")
            return True

    def owner_of(self, project_id: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(project_id)

    def is_active(self, project_id: str) -> bool:
        return self.owner_of(project_id) is not None

    def active_projects(self) -> List[str]:
        with self._lock:
            return list(self._owners)



@lru_cache(maxsize=None)
def get_run_registry() -> RunRegistry:
    return RunRegistry()
