"""
Collaborateur caméra : produit des octets d'image à la demande
"""
import asyncio
from pathlib import Path
from typing import List, Protocol, Sequence, Union
import logging

from faceauth.exceptions import CaptureError

logger = logging.getLogger(__name__)


class Camera(Protocol):
    async def capture(self) -> bytes:
        """Raises CaptureError si la capture échoue"""
        ...


class ImageFileCamera:
    """Rejoue une séquence d'images enregistrées sur disque"""

    def __init__(self, paths: Sequence[Union[str, Path]]):
        self._paths: List[Path] = [Path(p) for p in paths]
        self._index = 0

    async def capture(self) -> bytes:
        if self._index >= len(self._paths):
            raise CaptureError("Plus aucune image disponible")
        path = self._paths[self._index]
        self._index += 1
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.error(f"Erreur de capture ({path}): {e}")
            raise CaptureError(f"Impossible de lire {path}") from e
