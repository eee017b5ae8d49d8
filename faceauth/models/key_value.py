"""
Modèle pour la persistance clé-valeur des gabarits
"""
from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime, timezone

from faceauth.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class KeyValueEntry(Base):
    """
    Une entrée chaîne -> chaîne
    - biometric_template_{user_id}: EnrollmentRecord sérialisé en JSON
    - biometric_enrolled_{user_id}: drapeau d'enrôlement
    """
    __tablename__ = "key_value_entries"

    key = Column(String(255), primary_key=True, index=True)
    value = Column(Text, nullable=False)

    # Métadonnées
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<KeyValueEntry key={self.key}>"
