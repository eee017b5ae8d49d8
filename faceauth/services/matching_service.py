"""
Service de comparaison des embeddings
"""
import numpy as np
from typing import Sequence
import logging

from faceauth.config import settings

logger = logging.getLogger(__name__)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Similarité cosinus de deux vecteurs unitaires (produit scalaire), bornée à [-1, 1]
    Des dimensions différentes donnent 0.0 (violation de contrat, pas d'exception).
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        logger.warning(f"Dimensions incompatibles: {va.shape[0]} != {vb.shape[0]}")
        return 0.0
    return float(np.clip(np.dot(va, vb), -1.0, 1.0))


class MatchingService:
    """Décision accepter / rejeter contre une galerie d'enrôlement"""

    def __init__(self, threshold: float = None):
        self.threshold = settings.MATCH_THRESHOLD if threshold is None else threshold

    def similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        return cosine_similarity(a, b)

    def match_against_gallery(self, probe: np.ndarray, gallery: Sequence[np.ndarray]) -> float:
        """
        Similarité MOYENNE sur toute la galerie (pas le maximum) : un seul gabarit
        ressemblant par hasard ne suffit pas à accepter un imposteur.
        """
        if len(gallery) == 0:
            return 0.0
        scores = [cosine_similarity(probe, ref) for ref in gallery]
        return float(sum(scores) / len(scores))

    def is_match(self, score: float, threshold: float = None) -> bool:
        """Borne incluse : score >= seuil"""
        thr = self.threshold if threshold is None else threshold
        return score >= thr

    def accept(self, probe: np.ndarray, gallery: Sequence[np.ndarray], threshold: float = None) -> bool:
        return self.is_match(self.match_against_gallery(probe, gallery), threshold)


# Instance globale du service
matching_service = MatchingService()
