"""
Service biométrique : relie le pipeline (prétraitement -> embedding -> comparaison)
au stockage chiffré des gabarits
"""
import asyncio
from typing import List, Optional, Sequence, Tuple

import numpy as np
import logging

from faceauth.config import settings
from faceauth.exceptions import DecodeError, NotEnrolledError
from faceauth.schemas.biometric import EnrollmentRecord, VerificationResult
from faceauth.services.embedding_service import EmbeddingService, embedding_service
from faceauth.services.matching_service import MatchingService, matching_service
from faceauth.services.template_store import TemplateStore

logger = logging.getLogger(__name__)


class BiometricService:
    """Enrôlement et vérification faciale"""

    def __init__(
        self,
        template_store: TemplateStore,
        embeddings: Optional[EmbeddingService] = None,
        matcher: Optional[MatchingService] = None,
        threshold: float = None,
    ):
        self.template_store = template_store
        self.embeddings = embeddings or embedding_service
        self.matcher = matcher or matching_service
        self.threshold = settings.MATCH_THRESHOLD if threshold is None else threshold

    async def extract_embedding(self, image_bytes: bytes, bbox=None) -> np.ndarray:
        """Raises DecodeError si l'image est illisible"""
        return await asyncio.to_thread(self.embeddings.extract_embedding, image_bytes, bbox)

    async def enroll_faces(self, images: Sequence[bytes]) -> List[np.ndarray]:
        """Un embedding par image ; les images illisibles sont ignorées"""
        result = []
        for i, image in enumerate(images):
            try:
                result.append(await self.extract_embedding(image))
            except DecodeError as e:
                logger.warning(f"Image d'enrôlement {i} ignorée: {e}")
        return result

    async def enroll_user(self, user_id: str, images: Sequence[bytes]) -> Tuple[bool, str, Optional[EnrollmentRecord]]:
        """
        Enrôler un utilisateur à partir de plusieurs captures
        Returns:
            Tuple (succès, message, enregistrement)
        """
        embeddings = await self.enroll_faces(images)
        if not embeddings:
            logger.warning(f"Enrôlement de {user_id}: aucune caractéristique extraite")
            return False, "Impossible d'extraire les caractéristiques du visage. Réessayez.", None

        record = await self.template_store.save_embeddings(user_id, embeddings)
        return True, f"Enrôlement réussi : {len(embeddings)} gabarits chiffrés et enregistrés", record

    def verify_embedding(self, probe: np.ndarray, stored: Sequence[np.ndarray]) -> VerificationResult:
        """Décision sur un embedding déjà extrait"""
        if len(stored) == 0:
            return VerificationResult(
                verified=False,
                similarity=0.0,
                threshold=self.threshold,
                message="Aucun visage enrôlé.",
            )

        similarity = self.matcher.match_against_gallery(probe, stored)
        verified = self.matcher.is_match(similarity, self.threshold)
        logger.info(f"Score facial: {similarity:.4f} (seuil: {self.threshold}) -> {'ACCEPTÉ' if verified else 'REFUSÉ'}")

        if verified:
            message = f"Visage vérifié ! ({similarity * 100:.1f}% de correspondance)"
        else:
            message = f"Visage non reconnu. ({similarity * 100:.1f}% de correspondance)"
        return VerificationResult(
            verified=verified,
            similarity=similarity,
            threshold=self.threshold,
            message=message,
        )

    async def verify_face(self, probe_image: bytes, stored: Sequence[np.ndarray]) -> VerificationResult:
        """Vérifier une image contre des embeddings déjà déchiffrés"""
        if len(stored) == 0:
            return self.verify_embedding(np.zeros(0), stored)
        try:
            probe = await self.extract_embedding(probe_image)
        except DecodeError as e:
            logger.warning(f"Extraction impossible: {e}")
            return VerificationResult(
                verified=False,
                similarity=0.0,
                threshold=self.threshold,
                message="Impossible d'extraire les caractéristiques de l'image.",
            )
        return self.verify_embedding(probe, stored)

    async def verify_user(self, user_id: str, probe_image: bytes) -> VerificationResult:
        """
        Vérifier l'identité d'un utilisateur
        Raises:
            NotEnrolledError: aucun gabarit pour cet utilisateur
            DecryptionError: gabarit corrompu (propagée, jamais confondue avec "non enrôlé")
        """
        stored = await self.template_store.get_embeddings(user_id)
        if not stored:
            raise NotEnrolledError(user_id)
        logger.info(f"=== VÉRIFICATION FACIALE pour {user_id} ({len(stored)} gabarits) ===")
        return await self.verify_face(probe_image, stored)
