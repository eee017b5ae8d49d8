"""
Schémas Pydantic pour la biométrie
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class EnrollmentRecord(BaseModel):
    """
    Forme stockée d'un enrôlement : gabarit chiffré + métadonnées en clair
    (affichables sans déchiffrement)
    """
    user_id: str = Field(alias="userId")
    encrypted_template: str = Field(alias="encryptedTemplate")  # base64(salt ∥ IV ∥ ciphertext)
    created_at: datetime = Field(alias="createdAt")
    embedding_count: int = Field(default=0, alias="embeddingCount")

    class Config:
        populate_by_name = True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "EnrollmentRecord":
        return cls.model_validate_json(data)


class ImageQuality(BaseModel):
    """Résultat du contrôle qualité d'une capture"""
    is_valid: bool
    reason: Optional[str] = None
    brightness: Optional[float] = None
    blur_score: Optional[float] = None


class VerificationResult(BaseModel):
    """Décision de vérification faciale"""
    verified: bool
    similarity: float
    threshold: float
    message: str


class EnrollmentStepResult(BaseModel):
    """Résultat d'une étape de capture pendant l'enrôlement"""
    accepted: bool
    message: str
    captured: int
    required: int

    @property
    def complete(self) -> bool:
        return self.captured >= self.required


class LivenessOutcome(BaseModel):
    """Résultat d'une session de vivacité"""
    phase: str
    message: str
    similarity: Optional[float] = None
    liveness_skipped: bool = False
    left_eye: Optional[float] = None
    right_eye: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.phase == "success"


class EvaluationReport(BaseModel):
    """
    Rapport d'auto-évaluation (jamais persisté)

    Métriques (toutes dans [0, 1]) :
    - FAR : imposteurs acceptés / total imposteurs
    - FRR : légitimes rejetés / total légitimes
    - TAR : 1 - FRR
    - EER : point où FAR ≈ FRR (balayage 0.01 -> 0.99)
    """
    success: bool
    user_id: Optional[str] = None
    threshold: float

    # Distributions brutes
    genuine_scores: List[float] = Field(default_factory=list)
    impostor_scores: List[float] = Field(default_factory=list)

    # Statistiques descriptives
    mean_genuine_similarity: float = 0.0
    mean_impostor_similarity: float = 0.0

    far: float = 0.0
    frr: float = 0.0
    tar: float = 0.0
    accuracy: float = 0.0
    eer: float = 0.0

    # Matrice de confusion
    true_positives: int = 0
    false_negatives: int = 0
    false_positives: int = 0
    true_negatives: int = 0
    total_genuine_trials: int = 0
    total_impostor_trials: int = 0

    @classmethod
    def insufficient(cls, user_id: Optional[str] = None) -> "EvaluationReport":
        """Moins de 2 embeddings : aucune paire légitime possible"""
        return cls(success=False, user_id=user_id, threshold=0.0)
