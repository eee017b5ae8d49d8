"""
Stockage chiffré des gabarits d'enrôlement

Clés utilisées dans le stockage clé-valeur :
- biometric_template_{user_id} : EnrollmentRecord (JSON) contenant le gabarit chiffré
- biometric_enrolled_{user_id} : drapeau "true"

Un seul enregistrement par utilisateur : un ré-enrôlement remplace l'ancien.
Les opérations sur un même utilisateur sont sérialisées par un verrou.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np
import logging

from pydantic import ValidationError

from faceauth.config import settings
from faceauth.exceptions import DecryptionError
from faceauth.schemas.biometric import EnrollmentRecord
from faceauth.services.encryption_service import EncryptionService, get_encryption_service
from faceauth.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

TEMPLATE_KEY = "biometric_template_{user_id}"
ENROLLED_KEY = "biometric_enrolled_{user_id}"

NORM_TOLERANCE = 1e-6


def template_key(user_id: str) -> str:
    return TEMPLATE_KEY.format(user_id=user_id)


def enrolled_key(user_id: str) -> str:
    return ENROLLED_KEY.format(user_id=user_id)


class TemplateStore:
    """Cycle de vie enrôlement / lecture / suppression des gabarits"""

    def __init__(
        self,
        storage: KeyValueStore,
        encryption: Optional[EncryptionService] = None,
        embedding_dim: int = None,
    ):
        self.storage = storage
        self.encryption = encryption or get_encryption_service()
        self.embedding_dim = embedding_dim or settings.EMBEDDING_DIM
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, user_id: str):
        """Verrou par utilisateur, libéré de la table dès qu'il n'a plus d'utilisateur"""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] == 0:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def _validate(self, embeddings: Sequence[np.ndarray]) -> List[List[float]]:
        """Chaque embedding doit avoir la bonne dimension et une norme L2 égale à 1"""
        if len(embeddings) == 0:
            raise ValueError("Au moins un embedding est requis pour l'enrôlement")
        rows = []
        for i, emb in enumerate(embeddings):
            vec = np.asarray(emb, dtype=np.float64).reshape(-1)
            if vec.shape[0] != self.embedding_dim:
                raise ValueError(
                    f"Embedding {i}: dimension {vec.shape[0]} (attendu {self.embedding_dim})"
                )
            if not np.all(np.isfinite(vec)):
                raise ValueError(f"Embedding {i}: valeurs non finies")
            norm = float(np.linalg.norm(vec))
            if not abs(norm - 1.0) <= NORM_TOLERANCE:
                raise ValueError(f"Embedding {i} non normalisé (norme={norm:.6f})")
            rows.append(vec.tolist())
        return rows

    async def save_embeddings(self, user_id: str, embeddings: Sequence[np.ndarray]) -> EnrollmentRecord:
        """
        Chiffrer et enregistrer les embeddings d'un utilisateur
        Remplace tout enregistrement existant pour cet utilisateur.
        """
        rows = self._validate(embeddings)
        plaintext = json.dumps(rows).encode("utf-8")

        async with self._lock(user_id):
            encrypted = await asyncio.to_thread(self.encryption.encrypt, plaintext, user_id)
            record = EnrollmentRecord(
                user_id=user_id,
                encrypted_template=encrypted,
                created_at=datetime.now(timezone.utc),
                embedding_count=len(rows),
            )
            # Un seul écrit pour le gabarit : l'ancien est remplacé en bloc
            await self.storage.set_string(template_key(user_id), record.to_json())
            await self.storage.set_string(enrolled_key(user_id), "true")

        logger.info(f"Gabarit chiffré enregistré pour {user_id} ({len(rows)} embeddings)")
        return record

    async def get_record(self, user_id: str) -> Optional[EnrollmentRecord]:
        """Métadonnées en clair (sans déchiffrement) ; None si jamais enrôlé"""
        raw = await self.storage.get_string(template_key(user_id))
        if raw is None:
            return None
        try:
            return EnrollmentRecord.from_json(raw)
        except ValidationError as e:
            logger.error(f"Enregistrement illisible pour {user_id}")
            raise DecryptionError(f"Enregistrement d'enrôlement corrompu pour {user_id}") from e

    async def get_embeddings(self, user_id: str) -> Optional[List[np.ndarray]]:
        """
        Déchiffrer les embeddings d'un utilisateur

        Returns:
            Liste d'embeddings, ou None si l'utilisateur n'est pas enrôlé
        Raises:
            DecryptionError: stockage corrompu ou mauvais contexte de clé
        """
        async with self._lock(user_id):
            record = await self.get_record(user_id)
            if record is None:
                return None
            plaintext = await asyncio.to_thread(
                self.encryption.decrypt, record.encrypted_template, user_id
            )

        try:
            rows = json.loads(plaintext.decode("utf-8"))
            embeddings = [np.asarray(row, dtype=np.float64) for row in rows]
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            logger.error(f"Échec du déchiffrement du gabarit de {user_id}")
            raise DecryptionError(
                "Impossible de déchiffrer le gabarit biométrique. Clé incorrecte ou données corrompues."
            ) from e

        if any(emb.ndim != 1 or emb.shape[0] != self.embedding_dim for emb in embeddings):
            raise DecryptionError(f"Gabarit de {user_id} mal formé")
        return embeddings

    async def is_enrolled(self, user_id: str) -> bool:
        return (
            await self.storage.contains_key(enrolled_key(user_id))
            and await self.storage.contains_key(template_key(user_id))
        )

    async def delete_enrollment(self, user_id: str) -> None:
        async with self._lock(user_id):
            await self.storage.remove(enrolled_key(user_id))
            await self.storage.remove(template_key(user_id))
        logger.info(f"Enrôlement supprimé pour {user_id}")
