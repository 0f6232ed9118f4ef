"""
Path schema for a pool namespace

All pool state lives under /<pool-name>. The paths are derived solely from the
pool name and computed once.
"""

from typing import Dict, List


class PoolPaths:
    """Well-known coordinator paths of one pool"""

    def __init__(self, name: str):
        self.name = name
        self.base = f"/{name}"
        self.master = f"{self.base}/master"
        self.unused = f"{self.base}/unused"
        self.used = f"{self.base}/used"
        self.participants = f"{self.base}/participants"
        self.crash_cleanup_lock = f"{self.base}/crash-cleanup-lock"
        self.shutdown_lock = f"{self.base}/shutdown-lock"
        self.eviction_lock = f"{self.base}/eviction-lock"
        self.zombies = f"{self.base}/zombies"
        self.zombies_lock = f"{self.base}/zombies-lock"

    def all(self) -> List[str]:
        """Every schema path, parents before children"""
        return [
            self.base,
            self.master,
            self.unused,
            self.used,
            self.participants,
            self.crash_cleanup_lock,
            self.shutdown_lock,
            self.eviction_lock,
            self.zombies,
            self.zombies_lock,
        ]

    def to_dict(self) -> Dict[str, str]:
        return {
            'base': self.base,
            'master': self.master,
            'unused': self.unused,
            'used': self.used,
            'participants': self.participants,
            'crash_cleanup_lock': self.crash_cleanup_lock,
            'shutdown_lock': self.shutdown_lock,
            'eviction_lock': self.eviction_lock,
            'zombies': self.zombies,
            'zombies_lock': self.zombies_lock,
        }

    def master_node(self, node_id: str) -> str:
        return f"{self.master}/{node_id}"

    def unused_node(self, node_id: str) -> str:
        return f"{self.unused}/{node_id}"

    def used_node(self, node_id: str) -> str:
        return f"{self.used}/{node_id}"

    def zombie_node(self, node_id: str) -> str:
        return f"{self.zombies}/{node_id}"

    def participant_node(self, participant_id: str) -> str:
        return f"{self.participants}/{participant_id}"

    @staticmethod
    def node_id(path: str) -> str:
        """Last segment of a path, i.e. the id of a sequential node"""
        return path[path.rfind("/") + 1:]

    def __repr__(self) -> str:
        return f"PoolPaths({self.name!r})"
