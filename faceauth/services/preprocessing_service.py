"""
Service de prétraitement des images

Pipeline (ordre fixe, chaque étape est une fonction pure) :
    1. Redimensionnement 64x64 (interpolation bilinéaire)
    2. Niveaux de gris (0.299 R + 0.587 G + 0.114 B)
    3. Flou gaussien 3x3 (bords répliqués) contre le bruit capteur / JPEG
    4. Étirement du contraste [min, max] -> [0, 255]
"""
import numpy as np
import cv2
from typing import Optional, Sequence
import logging

from faceauth.config import settings
from faceauth.exceptions import DecodeError
from faceauth.schemas.biometric import ImageQuality

logger = logging.getLogger(__name__)

# Image canonique : tableau uint8 (64, 64) en lecture seule
CanonicalImage = np.ndarray

BLUR_KERNEL = np.array(
    [[1.0, 2.0, 1.0],
     [2.0, 4.0, 2.0],
     [1.0, 2.0, 1.0]],
    dtype=np.float64,
) / 16.0

LUMA_WEIGHTS = (0.299, 0.587, 0.114)  # R, G, B


def _round_to_uint8(values: np.ndarray) -> np.ndarray:
    """Arrondi au plus proche (demi vers le haut) puis bornage [0, 255]"""
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


class PreprocessingService:
    """Normalise des octets d'image bruts en image canonique"""

    def __init__(self, target_size: int = None):
        self.target_size = target_size or settings.TARGET_SIZE

    def decode(self, raw_bytes: bytes) -> np.ndarray:
        """
        Décoder des octets en image BGR (H, W, 3)
        Raises:
            DecodeError: si les octets ne forment pas une image valide
        """
        if not raw_bytes:
            raise DecodeError("Image vide")
        try:
            buffer = np.frombuffer(raw_bytes, dtype=np.uint8)
            image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        except (cv2.error, TypeError) as e:
            raise DecodeError(f"Impossible de décoder l'image: {e}") from e
        if image is None:
            raise DecodeError("Impossible de décoder l'image")
        return image

    def preprocess(self, raw_bytes: bytes, bbox: Optional[Sequence[float]] = None) -> CanonicalImage:
        """
        Pipeline complet : décodage -> (recadrage) -> redimensionnement -> gris -> flou -> contraste

        Args:
            raw_bytes: Octets de l'image (JPEG, PNG...)
            bbox: Boîte du visage (left, top, width, height) fournie par le détecteur
        """
        image = self.decode(raw_bytes)
        if bbox is not None:
            image = self.crop_face_region(image, *bbox)
        return self.preprocess_array(image)

    def preprocess_array(self, image_bgr: np.ndarray) -> CanonicalImage:
        resized = self.resize(image_bgr)
        gray = self.to_grayscale(resized)
        denoised = self.apply_gaussian_blur(gray)
        canonical = self.normalize_contrast(denoised)
        canonical.setflags(write=False)
        return canonical

    def resize(self, image: np.ndarray) -> np.ndarray:
        return cv2.resize(
            image,
            (self.target_size, self.target_size),
            interpolation=cv2.INTER_LINEAR,
        )

    def to_grayscale(self, image: np.ndarray) -> np.ndarray:
        """Luminance pondérée ; une image déjà en gris est retournée telle quelle"""
        if image.ndim == 2:
            return image.astype(np.uint8, copy=True)
        channels = image.astype(np.float64)
        # OpenCV stocke les canaux en BGR
        b, g, r = channels[..., 0], channels[..., 1], channels[..., 2]
        wr, wg, wb = LUMA_WEIGHTS
        return _round_to_uint8(wr * r + wg * g + wb * b)

    def apply_gaussian_blur(self, gray: np.ndarray) -> np.ndarray:
        """Filtre passe-bas 3x3 [[1,2,1],[2,4,2],[1,2,1]]/16, bords répliqués"""
        blurred = cv2.filter2D(
            gray.astype(np.float64),
            -1,
            BLUR_KERNEL,
            borderType=cv2.BORDER_REPLICATE,
        )
        return _round_to_uint8(blurred)

    def normalize_contrast(self, gray: np.ndarray) -> np.ndarray:
        """Étirement linéaire de [min, max] vers [0, 255] ; image plate inchangée"""
        min_v = int(gray.min())
        max_v = int(gray.max())
        value_range = max_v - min_v
        if value_range == 0:
            return gray.copy()
        stretched = (gray.astype(np.float64) - min_v) / value_range * 255.0
        return _round_to_uint8(stretched)

    def crop_face_region(
        self,
        image: np.ndarray,
        left: float,
        top: float,
        width: float,
        height: float,
    ) -> np.ndarray:
        """Recadrer le visage avec 20% de marge, borné aux dimensions de l'image"""
        img_h, img_w = image.shape[:2]
        pad_x = int(round(width * 0.20))
        pad_y = int(round(height * 0.20))

        x = int(min(max(left - pad_x, 0), img_w - 1))
        y = int(min(max(top - pad_y, 0), img_h - 1))
        w = int(min(max(width + pad_x * 2, 1), img_w - x))
        h = int(min(max(height + pad_y * 2, 1), img_h - y))

        return image[y:y + h, x:x + w]

    def to_float(self, canonical: CanonicalImage) -> np.ndarray:
        """Pixels ramenés dans [0.0, 1.0]"""
        return canonical.astype(np.float64) / 255.0

    def assess_quality(self, raw_bytes: bytes) -> ImageQuality:
        """
        Contrôle qualité d'une capture (luminosité moyenne, netteté)
        La netteté est la variance de la réponse absolue du Laplacien 4-voisins.
        """
        try:
            image = self.decode(raw_bytes)
        except DecodeError:
            return ImageQuality(is_valid=False, reason="Impossible de décoder l'image")

        gray = self.to_grayscale(image)
        brightness = float(gray.mean())
        if brightness < settings.MIN_BRIGHTNESS:
            return ImageQuality(
                is_valid=False,
                reason="Image trop sombre. Améliorez l'éclairage.",
                brightness=brightness,
            )
        if brightness > settings.MAX_BRIGHTNESS:
            return ImageQuality(
                is_valid=False,
                reason="Image trop lumineuse. Réduisez l'éclairage.",
                brightness=brightness,
            )

        blur_score = self.blur_score(gray)
        if blur_score < settings.MIN_BLUR_SCORE:
            return ImageQuality(
                is_valid=False,
                reason="Image floue. Tenez l'appareil immobile.",
                brightness=brightness,
                blur_score=blur_score,
            )

        return ImageQuality(is_valid=True, brightness=brightness, blur_score=blur_score)

    def blur_score(self, gray: np.ndarray) -> float:
        if gray.shape[0] < 3 or gray.shape[1] < 3:
            return 0.0
        g = gray.astype(np.float64)
        center = g[1:-1, 1:-1]
        laplacian = np.abs(
            4 * center - g[:-2, 1:-1] - g[2:, 1:-1] - g[1:-1, :-2] - g[1:-1, 2:]
        )
        return float(laplacian.var())


# Instance globale du service
preprocessing_service = PreprocessingService()
