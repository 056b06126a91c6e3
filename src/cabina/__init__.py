"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/__init__.py`.
Motor cliente de Cabina para salas de votación cifradas sobre un ledger
de solo anexado: una billetera, una sala, un voto.

Componentes detectados:
  - (sin componentes de nivel de módulo / no top-level components)

Notas:
- Mantener esta cabecera sincronizada con cambios estructurales del archivo.

======================== ENGLISH ========================
File: `src/cabina/__init__.py`.
Cabina client engine for encrypted voting rooms on an append-only ledger:
one wallet, one room, one ballot.

Detected components:
  - (sin componentes de nivel de módulo / no top-level components)

Notes:
- Keep this header in sync with structural changes in the file.
"""

__version__ = "0.4.0"
