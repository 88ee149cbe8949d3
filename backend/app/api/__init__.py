"""
API Routes
Progetto: Gestionale Ristorante

Modulo per l'aggregazione dei router versionati.
"""

from app.api.v1 import payments

# Esportazione router
__all__ = ["payments"]
