"""
Service de chiffrement AES-256-CBC pour les gabarits biométriques

Dérivation de clé : PBKDF2-HMAC-SHA256, 100 000 itérations, sel aléatoire de
16 octets tiré à chaque chiffrement et stocké avec le chiffré.
Format : base64( sel[16] ∥ IV[16] ∥ chiffré AES-CBC avec remplissage PKCS#7 )

Limite connue : la clé est dérivée de l'identifiant utilisateur (non secret).
Le chiffrement protège contre une inspection occasionnelle du stockage, pas
contre un attaquant qui lit le stockage et connaît les identifiants.
"""
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.backends import default_backend
from passlib.context import CryptContext
import base64
import binascii
import hmac
import os
import logging

from faceauth.config import settings
from faceauth.exceptions import DecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32   # 256 bits
SALT_LENGTH = 16  # 128 bits
IV_LENGTH = 16    # taille de bloc AES
BLOCK_SIZE = 16
MIN_ITERATIONS = 100000


class EncryptionService:
    """
    Service de chiffrement/déchiffrement pour les gabarits biométriques
    Le contexte de clé est l'identifiant utilisateur.
    """

    def __init__(self, iterations: int = None):
        iterations = iterations or settings.PBKDF2_ITERATIONS
        if iterations < MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 exige au moins {MIN_ITERATIONS} itérations (reçu {iterations})")
        self.iterations = iterations
        # Contexte de hachage des mots de passe (collaborateur d'authentification)
        self._pwd_context = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            pbkdf2_sha256__default_rounds=iterations,
        )

    def derive_key(self, key_context: str, salt: bytes) -> bytes:
        """Dériver une clé AES de 256 bits à partir du contexte et du sel"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
            backend=default_backend()
        )
        return kdf.derive(key_context.encode("utf-8"))

    @staticmethod
    def random_bytes(length: int) -> bytes:
        # Source cryptographiquement sûre pour sel et IV
        return os.urandom(length)

    @staticmethod
    def pkcs7_pad(data: bytes) -> bytes:
        padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
        return padder.update(data) + padder.finalize()

    @staticmethod
    def pkcs7_unpad(data: bytes) -> bytes:
        """
        Retirer le remplissage PKCS#7
        Une longueur hors de [1, 16] est tolérée : les données sont retournées telles quelles.
        """
        if not data:
            return data
        pad_len = data[-1]
        if pad_len < 1 or pad_len > BLOCK_SIZE:
            return data
        return data[:-pad_len]

    def encrypt(self, plaintext: bytes, key_context: str) -> str:
        """
        Chiffrer des données binaires

        Args:
            plaintext: Données à chiffrer (bytes)
            key_context: Identifiant utilisateur servant à dériver la clé

        Returns:
            base64(sel ∥ IV ∥ chiffré)
        """
        salt = self.random_bytes(SALT_LENGTH)
        iv = self.random_bytes(IV_LENGTH)
        key = self.derive_key(key_context, salt)

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).encryptor()
        ciphertext = encryptor.update(self.pkcs7_pad(plaintext)) + encryptor.finalize()

        logger.debug(f"Données chiffrées: {len(plaintext)} bytes -> {len(ciphertext)} bytes")
        return base64.b64encode(salt + iv + ciphertext).decode("ascii")

    def decrypt(self, encrypted: str, key_context: str) -> bytes:
        """
        Déchiffrer un blob base64(sel ∥ IV ∥ chiffré)

        Raises:
            DecryptionError: blob malformé, tronqué ou non multiple de la taille de bloc
        """
        try:
            combined = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Gabarit chiffré illisible (base64 invalide)") from e

        header = SALT_LENGTH + IV_LENGTH
        ciphertext = combined[header:]
        if len(combined) < header or not ciphertext or len(ciphertext) % BLOCK_SIZE != 0:
            raise DecryptionError(
                f"Gabarit chiffré tronqué ou corrompu ({len(combined)} bytes)"
            )

        salt = combined[:SALT_LENGTH]
        iv = combined[SALT_LENGTH:header]
        key = self.derive_key(key_context, salt)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        return self.pkcs7_unpad(padded)

    # Primitives pour le collaborateur d'authentification par mot de passe

    @staticmethod
    def hash_data(data: str) -> str:
        """Empreinte SHA-256 hexadécimale"""
        digest = hashes.Hash(hashes.SHA256(), backend=default_backend())
        digest.update(data.encode("utf-8"))
        return digest.finalize().hex()

    def verify_hash(self, data: str, expected_hash: str) -> bool:
        """Comparaison en temps constant"""
        return hmac.compare_digest(self.hash_data(data), expected_hash)

    def get_password_hash(self, password: str) -> str:
        """Hasher un mot de passe (PBKDF2-SHA256 salé)"""
        return self._pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """Vérifier un mot de passe"""
        try:
            return self._pwd_context.verify(plain_password, hashed_password)
        except ValueError:
            # Hash inconnu ou malformé
            return False


# Instance globale - sera initialisée avec la config
encryption_service = None


def get_encryption_service() -> EncryptionService:
    """
    Retourne l'instance du service de chiffrement
    Lazy initialization pour attendre que la config soit chargée
    """
    global encryption_service

    if encryption_service is None:
        encryption_service = EncryptionService(settings.PBKDF2_ITERATIONS)

    return encryption_service
