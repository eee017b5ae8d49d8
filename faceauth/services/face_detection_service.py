"""
Service de détection faciale (collaborateur externe)

Le détecteur renvoie un résultat étiqueté :
- FaceFound : visage trouvé, champs optionnels (boîte, angles, yeux)
- FaceNotFound : aucun visage / plusieurs visages, avec un message
- DetectionIndeterminate : détecteur indisponible ou signal absent

Tout champ optionnel absent est "indéterminé", jamais une erreur.
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, Union

import numpy as np
import cv2
import logging

from faceauth.config import settings

logger = logging.getLogger(__name__)

# (left, top, width, height) en pixels
BoundingBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class FaceFound:
    bbox: Optional[BoundingBox] = None
    yaw: Optional[float] = None    # rotation gauche/droite
    roll: Optional[float] = None   # inclinaison
    left_eye_open: Optional[float] = None
    right_eye_open: Optional[float] = None


@dataclass(frozen=True)
class FaceNotFound:
    message: str = "Aucun visage détecté. Centrez votre visage."


@dataclass(frozen=True)
class DetectionIndeterminate:
    reason: str = "Détecteur indisponible"


DetectionResult = Union[FaceFound, FaceNotFound, DetectionIndeterminate]


@dataclass(frozen=True)
class EyeState:
    """Probabilités d'ouverture des yeux (0.0 = fermé, 1.0 = ouvert)"""
    left: float
    right: float

    @property
    def avg(self) -> float:
        return (self.left + self.right) / 2.0

    def is_open(self, threshold: float = None) -> bool:
        """Les deux yeux ouverts"""
        thr = settings.EYES_OPEN_THRESHOLD if threshold is None else threshold
        return self.left > thr and self.right > thr

    def is_closed(self, threshold: float = None) -> bool:
        """Au moins un œil fermé (clignement)"""
        thr = settings.EYES_CLOSED_THRESHOLD if threshold is None else threshold
        return self.left < thr or self.right < thr


class FaceAngle(str, enum.Enum):
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


class FaceDetector(Protocol):
    async def detect(self, image_bytes: bytes) -> DetectionResult:
        ...


def eye_state(result: DetectionResult) -> Optional[EyeState]:
    """None si le signal d'ouverture des yeux est indéterminé"""
    if not isinstance(result, FaceFound):
        return None
    if result.left_eye_open is None or result.right_eye_open is None:
        return None
    return EyeState(left=result.left_eye_open, right=result.right_eye_open)


def validate_face(face: FaceFound) -> Tuple[bool, Optional[str]]:
    """
    Valider la qualité d'une détection pour l'enrôlement
    Returns:
        Tuple (valide, raison du rejet)
    """
    if face.bbox is not None:
        _, _, width, height = face.bbox
        if width * height < settings.MIN_FACE_AREA:
            return False, "Visage trop petit. Rapprochez-vous de la caméra."

    if face.yaw is not None and abs(face.yaw) > settings.MAX_HEAD_ANGLE:
        return False, "Tournez la tête face à la caméra."

    if face.roll is not None and abs(face.roll) > settings.MAX_HEAD_ANGLE:
        return False, "Gardez la tête droite, sans l'incliner."

    for prob in (face.left_eye_open, face.right_eye_open):
        if prob is not None and prob < settings.MIN_EYE_OPEN_ENROLL:
            return False, "Veuillez ouvrir les deux yeux."

    return True, None


def face_angle(face: FaceFound) -> FaceAngle:
    yaw = face.yaw or 0.0
    if yaw > settings.ANGLE_SIDE_THRESHOLD:
        return FaceAngle.LEFT
    if yaw < -settings.ANGLE_SIDE_THRESHOLD:
        return FaceAngle.RIGHT
    return FaceAngle.CENTER


class HaarCascadeFaceDetector:
    """
    Détecteur OpenCV (Haar Cascade, très rapide)
    Fournit la boîte du visage mais jamais les probabilités d'ouverture des
    yeux : le défi de vivacité est donc indéterminé avec ce détecteur.
    """

    def __init__(self, max_width: int = 480):
        self.max_width = max_width
        self.face_cascade = cv2.CascadeClassifier(
            cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
        )

    def _detect_sync(self, image_bytes: bytes) -> DetectionResult:
        image = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            return DetectionIndeterminate("Image illisible")

        # Redimensionner pour accélérer
        height, width = image.shape[:2]
        scale = 1.0
        if width > self.max_width:
            scale = self.max_width / width
            image = cv2.resize(image, (self.max_width, int(height * scale)))

        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        faces = self.face_cascade.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=4,
            minSize=(30, 30)
        )

        if len(faces) == 0:
            return FaceNotFound()
        if len(faces) > 1:
            return FaceNotFound("Plusieurs visages détectés. Une seule personne autorisée.")

        x, y, w, h = (float(v) / scale for v in faces[0])
        return FaceFound(bbox=(x, y, w, h))

    async def detect(self, image_bytes: bytes) -> DetectionResult:
        if not image_bytes:
            return DetectionIndeterminate("Image vide")
        try:
            return await asyncio.to_thread(self._detect_sync, image_bytes)
        except cv2.error as e:
            logger.error(f"Erreur de détection: {e}")
            return DetectionIndeterminate(str(e))
