"""
faceauth - authentification faciale hors-ligne

Pipeline biométrique : prétraitement, extraction de descripteurs (LBP + Sobel),
comparaison cosinus, stockage chiffré des gabarits, défi de vivacité et
auto-évaluation FAR/FRR/EER.
"""

__version__ = "1.0.0"
