"""
Erreurs typées du pipeline biométrique
"""
from typing import Optional


class FaceAuthError(Exception):
    """Erreur de base du système"""


class DecodeError(FaceAuthError):
    """Les octets fournis ne forment pas une image valide"""


class CaptureError(FaceAuthError):
    """Échec du collaborateur caméra"""


class LivenessFailed(FaceAuthError):
    """Défi de vivacité échoué (yeux fermés, pas de clignement...)"""

    def __init__(self, message: str, left: Optional[float] = None, right: Optional[float] = None):
        super().__init__(message)
        self.left = left
        self.right = right


class NotEnrolledError(FaceAuthError):
    """Aucun gabarit enregistré pour cet utilisateur"""

    def __init__(self, user_id: str):
        super().__init__(f"Utilisateur non enrôlé: {user_id}")
        self.user_id = user_id


class DecryptionError(FaceAuthError):
    """Gabarit corrompu, tronqué ou mauvaise clé"""


class InsufficientDataError(FaceAuthError):
    """Pas assez d'embeddings pour l'évaluation (minimum 2)"""
