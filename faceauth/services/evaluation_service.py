"""
Module d'auto-évaluation des performances biométriques

- Scores légitimes : similarité de toutes les paires C(n,2) d'embeddings enrôlés
- Scores imposteurs : 50 vecteurs unitaires aléatoires (Box-Muller puis
  normalisation L2) comparés à CHAQUE embedding enrôlé (attaquants sans
  connaissance ; similarité attendue ≈ 0)
- Métriques : FAR, FRR, TAR, accuracy au seuil, EER par balayage 0.01 -> 0.99

N'intervient jamais dans une décision d'authentification.
"""
from typing import Dict, List, Optional, Sequence

import numpy as np
import logging

from faceauth.config import settings
from faceauth.exceptions import InsufficientDataError
from faceauth.schemas.biometric import EvaluationReport
from faceauth.services.embedding_service import l2_normalize
from faceauth.services.matching_service import cosine_similarity
from faceauth.services.template_store import TemplateStore

logger = logging.getLogger(__name__)


def compute_genuine_scores(embeddings: Sequence[np.ndarray]) -> List[float]:
    """Toutes les paires non ordonnées (i < j)"""
    if len(embeddings) < 2:
        raise InsufficientDataError(f"{len(embeddings)} embedding(s), minimum 2")
    scores = []
    for i in range(len(embeddings)):
        for j in range(i + 1, len(embeddings)):
            scores.append(cosine_similarity(embeddings[i], embeddings[j]))
    return scores


def gaussian_samples(rng: np.random.Generator, size: int) -> np.ndarray:
    """Transformée de Box-Muller : uniforme -> N(0, 1)"""
    u1 = np.clip(rng.random(size), 1e-10, 1.0)
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def random_unit_vectors(count: int, dim: int, rng: np.random.Generator) -> List[np.ndarray]:
    return [l2_normalize(gaussian_samples(rng, dim)) for _ in range(count)]


def compute_impostor_scores(
    embeddings: Sequence[np.ndarray],
    count: int = None,
    rng: Optional[np.random.Generator] = None,
) -> List[float]:
    """count x n scores : chaque imposteur contre chaque embedding enrôlé"""
    count = settings.EVAL_IMPOSTOR_COUNT if count is None else count
    rng = rng or np.random.default_rng()
    dim = np.asarray(embeddings[0]).reshape(-1).shape[0]
    scores = []
    for impostor in random_unit_vectors(count, dim, rng):
        for ref in embeddings:
            scores.append(cosine_similarity(ref, impostor))
    return scores


def confusion_matrix(genuine: Sequence[float], impostor: Sequence[float], threshold: float) -> Dict[str, int]:
    g = np.asarray(genuine, dtype=np.float64)
    i = np.asarray(impostor, dtype=np.float64)
    return {
        'tp': int(np.sum(g >= threshold)),  # acceptations correctes
        'fn': int(np.sum(g < threshold)),   # faux rejets
        'fp': int(np.sum(i >= threshold)),  # fausses acceptations
        'tn': int(np.sum(i < threshold)),   # rejets corrects
    }


def estimate_eer(genuine: Sequence[float], impostor: Sequence[float], steps: int = None) -> float:
    """
    Balayage du seuil par pas de 0.01 ; l'EER est la moyenne de FAR et FRR
    au seuil minimisant |FAR - FRR| (premier minimum rencontré)
    """
    steps = settings.EER_STEPS if steps is None else steps
    g = np.asarray(genuine, dtype=np.float64)
    i = np.asarray(impostor, dtype=np.float64)
    if g.size == 0 or i.size == 0:
        return 0.0

    min_diff = float("inf")
    eer = 0.0
    for step in range(1, steps + 1):
        thr = step / 100.0
        frr = float(np.sum(g < thr)) / g.size
        far = float(np.sum(i >= thr)) / i.size
        diff = abs(far - frr)
        if diff < min_diff:
            min_diff = diff
            eer = (far + frr) / 2.0
    return eer


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def build_report(
    genuine: Sequence[float],
    impostor: Sequence[float],
    threshold: float,
    user_id: Optional[str] = None,
) -> EvaluationReport:
    """Métriques à partir de deux distributions de scores"""
    cm = confusion_matrix(genuine, impostor, threshold)
    total_genuine = len(genuine)
    total_impostor = len(impostor)
    total = total_genuine + total_impostor

    far = cm['fp'] / total_impostor if total_impostor > 0 else 0.0
    frr = cm['fn'] / total_genuine if total_genuine > 0 else 0.0
    accuracy = (cm['tp'] + cm['tn']) / total if total > 0 else 0.0

    return EvaluationReport(
        success=True,
        user_id=user_id,
        threshold=threshold,
        genuine_scores=list(genuine),
        impostor_scores=list(impostor),
        mean_genuine_similarity=_mean(genuine),
        mean_impostor_similarity=_mean(impostor),
        far=float(far),
        frr=float(frr),
        tar=float(1.0 - frr),
        accuracy=float(accuracy),
        eer=estimate_eer(genuine, impostor),
        true_positives=cm['tp'],
        false_negatives=cm['fn'],
        false_positives=cm['fp'],
        true_negatives=cm['tn'],
        total_genuine_trials=total_genuine,
        total_impostor_trials=total_impostor,
    )


class EvaluationService:
    """Évaluation hors-ligne des gabarits enrôlés"""

    def __init__(self, template_store: Optional[TemplateStore] = None, impostor_count: int = None, seed: Optional[int] = None):
        self.template_store = template_store
        self.impostor_count = settings.EVAL_IMPOSTOR_COUNT if impostor_count is None else impostor_count
        # Générateur non cryptographique : n'affecte que les statistiques
        self.rng = np.random.default_rng(seed)

    def evaluate(
        self,
        embeddings: Sequence[np.ndarray],
        threshold: float = None,
        user_id: Optional[str] = None,
    ) -> EvaluationReport:
        """Rapport complet, ou rapport 'insufficient' si moins de 2 embeddings"""
        threshold = settings.MATCH_THRESHOLD if threshold is None else threshold
        try:
            genuine = compute_genuine_scores(embeddings)
        except InsufficientDataError as e:
            logger.info(f"Évaluation impossible: {e}")
            return EvaluationReport.insufficient(user_id)

        impostor = compute_impostor_scores(embeddings, self.impostor_count, self.rng)
        report = build_report(genuine, impostor, threshold, user_id=user_id)
        logger.info(
            f"Évaluation: FAR={report.far:.3f} FRR={report.frr:.3f} "
            f"EER={report.eer:.3f} accuracy={report.accuracy:.3f}"
        )
        return report

    async def evaluate_user(self, user_id: str, threshold: float = None) -> EvaluationReport:
        """Évaluer les gabarits déchiffrés d'un utilisateur"""
        if self.template_store is None:
            raise RuntimeError("Aucun TemplateStore configuré")
        embeddings = await self.template_store.get_embeddings(user_id)
        return self.evaluate(embeddings or [], threshold, user_id=user_id)
