# Modèles de données
# Importer tous les modèles pour que SQLAlchemy puisse créer les tables

from faceauth.models.key_value import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
