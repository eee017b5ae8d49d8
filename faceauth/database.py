"""
Configuration de la base de données SQLite (persistance clé-valeur)
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from faceauth.config import settings


# Moteur de base de données asynchrone
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Classe de base pour tous les modèles"""
    pass


async def init_db(bind=None):
    """Initialiser la base de données"""
    # Importer les modèles pour enregistrer leurs tables
    from faceauth.models import KeyValueEntry  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
