"""
Configuration de l'application
"""
from pydantic_settings import BaseSettings
import logging


class Settings(BaseSettings):
    """Paramètres de configuration"""

    # Application
    APP_NAME: str = "FaceAuth"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Persistance clé-valeur (adaptateur SQL)
    DATABASE_URL: str = "sqlite+aiosqlite:///./faceauth.db"

    # Pipeline
    TARGET_SIZE: int = 64
    EMBEDDING_DIM: int = 640

    # Décision - seuil de similarité cosinus (moyenne sur la galerie)
    MATCH_THRESHOLD: float = 0.78

    # Chiffrement des gabarits
    PBKDF2_ITERATIONS: int = 100000

    # Enrôlement
    ENROLLMENT_REQUIRED_IMAGES: int = 5
    MIN_BRIGHTNESS: float = 50.0
    MAX_BRIGHTNESS: float = 230.0
    MIN_BLUR_SCORE: float = 100.0
    MIN_FACE_AREA: float = 50000.0
    MAX_HEAD_ANGLE: float = 15.0
    MIN_EYE_OPEN_ENROLL: float = 0.5
    ANGLE_SIDE_THRESHOLD: float = 20.0

    # Vivacité (clignement)
    EYES_OPEN_THRESHOLD: float = 0.55
    EYES_CLOSED_THRESHOLD: float = 0.35
    BLINK_COUNTDOWN_SECONDS: int = 3
    COUNTDOWN_TICK_SECONDS: float = 1.0
    # Si le détecteur ne fournit pas de probabilité, on passe directement
    # à la vérification d'identité (fail-open)
    LIVENESS_FAIL_OPEN: bool = True

    # Auto-évaluation
    EVAL_IMPOSTOR_COUNT: int = 50
    EER_STEPS: int = 99

    class Config:
        env_file = ".env"
        env_prefix = "FACEAUTH_"
        case_sensitive = True


settings = Settings()


def setup_logging(level: str = None) -> None:
    """Configurer le logging selon LOG_LEVEL"""
    level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # basicConfig est sans effet si la racine a déjà des handlers
    logging.getLogger("faceauth").setLevel(level)
