"""
Object factory contract

The pool never creates, checks or tears down pooled objects itself. It
delegates to an ObjectFactory supplied by the user, and stores the factory's
serialized form of each object in the coordinator so any participant can
rebuild it.
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

T = TypeVar('T')


class ObjectFactory(ABC, Generic[T]):
    """Abstract interface for pooled object factories"""

    @abstractmethod
    async def create(self) -> T:
        """Create a fresh object"""
        pass

    @abstractmethod
    async def validate(self, obj: T) -> bool:
        """
        Check whether an object is usable.

        Raises:
            ZombieError: the object's state is indeterminate
        """
        pass

    @abstractmethod
    async def destroy(self, obj: T) -> None:
        """
        Release the resources behind an object.

        Raises:
            ZombieError: destruction failed in an indeterminate way
        """
        pass

    @abstractmethod
    def serialize(self, obj: T) -> bytes:
        pass

    @abstractmethod
    def deserialize(self, data: bytes) -> T:
        pass
