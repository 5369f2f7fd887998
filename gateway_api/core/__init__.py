"""Core module - Dominio del gateway de dispositivos.

Estructura:
- domain/  → Modelos de dominio e interfaces de colaboradores
"""
