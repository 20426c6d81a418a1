# billing/services/sri/__init__.py
"""
Servicios relacionados con SRI:

- access_key: clave de acceso de 49 dígitos (módulo 11).
- sequences: asignación de secuenciales por punto de emisión.
- status_machine: transiciones de estado permitidas.
- xml_builder: XML de factura, nota de crédito, nota de débito y retención.
- signer: firma electrónica XAdES-BES.
- client: cliente SOAP para Recepción/Autorización.
- error_log: bitácora SriErrorLog.
- workflow: orquestación del ciclo completo.
"""
