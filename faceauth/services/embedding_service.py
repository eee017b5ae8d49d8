"""
Service d'extraction des descripteurs faciaux (embedding 640 dimensions)

Deux canaux indépendants, concaténés puis normalisés L2 :
  - Canal A : histogrammes LBP (Local Binary Pattern), grille 4x4 de cellules
    16x16, 32 classes par cellule -> 512 dimensions
  - Canal B : magnitude du gradient de Sobel, grille 8x8 de cellules 8x8,
    moyenne + écart-type -> 128 dimensions

La luminosité brute n'est pas discriminante (deux visages sous un même
éclairage se ressemblent) ; les codes LBP le sont beaucoup plus.
"""
import numpy as np
from typing import Optional
import logging

from faceauth.services.preprocessing_service import (
    CanonicalImage,
    PreprocessingService,
    preprocessing_service,
)

logger = logging.getLogger(__name__)

LBP_GRID = 4
LBP_CELL = 16
LBP_BINS = 32
SOBEL_GRID = 8
SOBEL_CELL = 8

TEXTURE_DIM = LBP_GRID * LBP_GRID * LBP_BINS   # 512
GRADIENT_DIM = SOBEL_GRID * SOBEL_GRID * 2     # 128
EMBEDDING_DIM = TEXTURE_DIM + GRADIENT_DIM     # 640

# 8 voisins dans le sens horaire depuis le coin haut-gauche, en (dx, dy)
LBP_NEIGHBORS = (
    (-1, -1), (0, -1), (1, -1),
    (1, 0),
    (1, 1), (0, 1), (-1, 1),
    (-1, 0),
)

SOBEL_X = np.array([[-1.0, 0.0, 1.0],
                    [-2.0, 0.0, 2.0],
                    [-1.0, 0.0, 1.0]])
SOBEL_Y = np.array([[-1.0, -2.0, -1.0],
                    [0.0, 0.0, 0.0],
                    [1.0, 2.0, 1.0]])


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    """Normalisation L2 ; le vecteur nul est retourné tel quel"""
    arr = np.asarray(vec, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr
    return arr / norm


def _cells(grid: np.ndarray, n: int, size: int) -> np.ndarray:
    """Découper une carte (n*size, n*size) en n*n cellules, ordre ligne par ligne"""
    return grid.reshape(n, size, n, size).transpose(0, 2, 1, 3).reshape(n * n, size * size)


class EmbeddingService:
    """Extraction déterministe d'un embedding à partir d'une image canonique"""

    def __init__(self, preprocessor: Optional[PreprocessingService] = None):
        self.preprocessor = preprocessor or preprocessing_service

    def extract_embedding(self, raw_bytes: bytes, bbox=None) -> np.ndarray:
        """Octets bruts -> embedding 640 dimensions normalisé L2"""
        canonical = self.preprocessor.preprocess(raw_bytes, bbox=bbox)
        return self.extract(canonical)

    def extract(self, canonical: CanonicalImage) -> np.ndarray:
        """Image canonique 64x64 -> embedding 640 dimensions normalisé L2"""
        texture = self.lbp_histogram(self.compute_lbp_map(canonical))
        gradient = self.spatial_pooling(self.compute_gradient_magnitude(canonical))
        return l2_normalize(np.concatenate([texture, gradient]))

    # Canal A : LBP

    def compute_lbp_map(self, image: np.ndarray) -> np.ndarray:
        """
        Code 8 bits par pixel intérieur : le bit k vaut 1 si le voisin k est
        >= au centre (égalité -> bit à 1). Les pixels de bord restent à 0.
        """
        img = np.asarray(image, dtype=np.int16)
        h, w = img.shape
        center = img[1:h - 1, 1:w - 1]
        codes = np.zeros_like(center, dtype=np.int32)
        for k, (dx, dy) in enumerate(LBP_NEIGHBORS):
            neighbor = img[1 + dy:h - 1 + dy, 1 + dx:w - 1 + dx]
            codes |= (neighbor >= center).astype(np.int32) << k

        out = np.zeros((h, w), dtype=np.int32)
        out[1:h - 1, 1:w - 1] = codes
        return out

    def lbp_histogram(self, lbp_map: np.ndarray) -> np.ndarray:
        """16 cellules x 32 classes (5 bits de poids fort), chaque histogramme somme à 1"""
        cells = _cells(lbp_map, LBP_GRID, LBP_CELL)
        bins = (cells * LBP_BINS) >> 8
        hist = np.zeros((cells.shape[0], LBP_BINS), dtype=np.float64)
        for i, cell_bins in enumerate(bins):
            counts = np.bincount(cell_bins, minlength=LBP_BINS).astype(np.float64)
            total = counts.sum()
            if total > 0:
                counts /= total
            hist[i] = counts
        return hist.reshape(-1)

    # Canal B : Sobel

    def compute_gradient_magnitude(self, image: np.ndarray) -> np.ndarray:
        """Magnitude Sobel sur l'image ramenée dans [0, 1], normalisée par le maximum global"""
        # Sommes sur les valeurs entières : une image uniforme donne exactement 0
        img = np.asarray(image, dtype=np.float64)
        h, w = img.shape
        gx = np.zeros((h - 2, w - 2))
        gy = np.zeros((h - 2, w - 2))
        for ky in range(3):
            for kx in range(3):
                window = img[ky:h - 2 + ky, kx:w - 2 + kx]
                gx += SOBEL_X[ky, kx] * window
                gy += SOBEL_Y[ky, kx] * window

        mag = np.zeros((h, w), dtype=np.float64)
        mag[1:h - 1, 1:w - 1] = np.sqrt(gx * gx + gy * gy) / 255.0
        max_mag = float(mag.max())
        if max_mag > 0.0:
            mag /= max_mag
        return mag

    def spatial_pooling(self, mag: np.ndarray) -> np.ndarray:
        """64 moyennes suivies de 64 écarts-types (population)"""
        cells = _cells(mag, SOBEL_GRID, SOBEL_CELL)
        means = cells.mean(axis=1)
        stdevs = cells.std(axis=1)
        return np.concatenate([means, stdevs])


# Instance globale du service
embedding_service = EmbeddingService()
