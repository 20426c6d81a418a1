# billing/services/__init__.py
"""
Servicios de dominio para comprobantes electrónicos:

- billing/services/sri/: clave de acceso, secuenciales, XML, firma,
  cliente SOAP, bitácora de errores y orquestación del flujo SRI.
- billing/services/ride.py: RIDE en PDF de comprobantes autorizados.
"""
