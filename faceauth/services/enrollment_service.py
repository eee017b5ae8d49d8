"""
Service d'enrôlement facial guidé

Chaque capture traverse une chaîne d'étapes qui s'arrête au premier échec :
    capture -> qualité -> détection -> validation (taille, pose, yeux)
Un échec renvoie un message et invite à recommencer l'étape courante ; il
n'annule pas les captures déjà acceptées.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

import logging

from faceauth.config import settings
from faceauth.exceptions import CaptureError
from faceauth.schemas.biometric import EnrollmentRecord, EnrollmentStepResult
from faceauth.services.biometric_service import BiometricService
from faceauth.services.camera_service import Camera
from faceauth.services.face_detection_service import (
    DetectionIndeterminate,
    FaceAngle,
    FaceDetector,
    FaceFound,
    FaceNotFound,
    face_angle,
    validate_face,
)
from faceauth.services.preprocessing_service import PreprocessingService, preprocessing_service

logger = logging.getLogger(__name__)

START_MESSAGE = "Regardez droit vers la caméra"


@dataclass
class StageResult:
    ok: bool
    value: Any = None
    message: str = ""


Stage = Callable[[Any], Awaitable[StageResult]]


async def run_stages(value: Any, stages: Sequence[Stage]) -> StageResult:
    """Enchaîner les étapes, arrêt au premier échec"""
    result = StageResult(ok=True, value=value)
    for stage in stages:
        result = await stage(result.value)
        if not result.ok:
            return result
    return result


class EnrollmentSession:
    """Collecte de N captures valides puis enregistrement chiffré"""

    def __init__(
        self,
        user_id: str,
        camera: Camera,
        detector: FaceDetector,
        biometric: BiometricService,
        required_images: int = None,
        preprocessor: Optional[PreprocessingService] = None,
    ):
        self.user_id = user_id
        self.camera = camera
        self.detector = detector
        self.biometric = biometric
        self.required_images = required_images or settings.ENROLLMENT_REQUIRED_IMAGES
        self.preprocessor = preprocessor or preprocessing_service

        self.captured_images: List[bytes] = []
        self.captured_angles: Set[FaceAngle] = set()
        self.message = START_MESSAGE

    @property
    def is_complete(self) -> bool:
        return len(self.captured_images) >= self.required_images

    # Étapes

    async def _capture(self, _: Any) -> StageResult:
        try:
            image = await self.camera.capture()
        except CaptureError as e:
            return StageResult(ok=False, message=f"Erreur de capture: {e}")
        return StageResult(ok=True, value=image)

    async def _check_quality(self, image: bytes) -> StageResult:
        quality = self.preprocessor.assess_quality(image)
        if not quality.is_valid:
            return StageResult(ok=False, message=quality.reason)
        return StageResult(ok=True, value=image)

    async def _detect(self, image: bytes) -> StageResult:
        detection = await self.detector.detect(image)
        if isinstance(detection, FaceFound):
            return StageResult(ok=True, value=(image, detection))
        if isinstance(detection, FaceNotFound):
            return StageResult(ok=False, message=detection.message)
        if isinstance(detection, DetectionIndeterminate):
            return StageResult(ok=False, message=f"Détection impossible ({detection.reason}). Réessayez.")
        raise TypeError(f"Résultat de détection inattendu: {detection!r}")

    async def _validate(self, detected: Tuple[bytes, FaceFound]) -> StageResult:
        _, face = detected
        is_valid, reason = validate_face(face)
        if not is_valid:
            return StageResult(ok=False, message=reason)
        return StageResult(ok=True, value=detected)

    # API

    async def capture_step(self) -> EnrollmentStepResult:
        """Une tentative de capture ; le message guide l'utilisateur"""
        if self.is_complete:
            return self._step(False, "Toutes les images sont capturées.")

        result = await run_stages(None, [self._capture, self._check_quality, self._detect, self._validate])
        if not result.ok:
            logger.info(f"Capture rejetée pour {self.user_id}: {result.message}")
            self.message = result.message
            return self._step(False, result.message)

        image, face = result.value
        self.captured_images.append(image)
        self.captured_angles.add(face_angle(face))

        if self.is_complete:
            self.message = "Toutes les images sont capturées ! Enregistrement..."
        else:
            self.message = self.next_instruction()
        return self._step(True, self.message)

    def next_instruction(self) -> str:
        remaining = self.required_images - len(self.captured_images)
        if FaceAngle.CENTER not in self.captured_angles:
            return f"Regardez droit vers la caméra ({remaining} restantes)"
        if FaceAngle.LEFT not in self.captured_angles:
            return f"Tournez légèrement la tête à gauche ({remaining} restantes)"
        if FaceAngle.RIGHT not in self.captured_angles:
            return f"Tournez légèrement la tête à droite ({remaining} restantes)"
        return f"Parfait ! Encore {remaining} capture(s)"

    async def complete(self) -> Tuple[bool, str, Optional[EnrollmentRecord]]:
        """Extraire les embeddings des captures et les enregistrer (remplace l'ancien gabarit)"""
        if not self.is_complete:
            return False, f"{self.required_images - len(self.captured_images)} capture(s) manquante(s)", None

        ok, message, record = await self.biometric.enroll_user(self.user_id, self.captured_images)
        if not ok:
            self.reset()
        self.message = message
        return ok, message, record

    def reset(self) -> None:
        self.captured_images.clear()
        self.captured_angles.clear()
        self.message = START_MESSAGE

    def _step(self, accepted: bool, message: str) -> EnrollmentStepResult:
        return EnrollmentStepResult(
            accepted=accepted,
            message=message,
            captured=len(self.captured_images),
            required=self.required_images,
        )
