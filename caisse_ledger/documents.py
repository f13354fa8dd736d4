"""
Proof Document Storage Module

Evidence attached to advance requests and refund payouts. The engine only
keeps the reference returned by the storage collaborator; it never reads
file contents back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
import asyncio
import hashlib


@dataclass(frozen=True)
class ProofFile:
    """File handed over by the caller"""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class DocumentRef:
    """Reference returned by the document storage"""
    url: str
    path: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {'url': self.url, 'path': self.path, 'size': self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DocumentRef':
        return cls(url=data['url'], path=data['path'], size=int(data['size']))


class DocumentStorage(ABC):
    """Proof/document storage collaborator"""

    @abstractmethod
    async def upload(self, file: ProofFile, path: str) -> DocumentRef:
        """Store a file under ``path`` and return its reference"""
        pass


class InMemoryDocumentStorage(DocumentStorage):
    """Keeps uploads in a dict; used by tests and local runs"""

    def __init__(self, base_url: str = "memory://proofs"):
        self.base_url = base_url.rstrip("/")
        self._files: Dict[str, ProofFile] = {}
        self._lock = asyncio.Lock()

    async def upload(self, file: ProofFile, path: str) -> DocumentRef:
        digest = hashlib.sha256(file.content).hexdigest()[:12]
        full_path = f"{path.strip('/')}/{digest}-{file.filename}"
        async with self._lock:
            self._files[full_path] = file
        return DocumentRef(url=f"{self.base_url}/{full_path}", path=full_path, size=file.size)

    def get(self, path: str) -> Optional[ProofFile]:
        return self._files.get(path)

    def __len__(self) -> int:
        return len(self._files)
