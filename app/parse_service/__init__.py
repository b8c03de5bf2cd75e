"""
PDF Parse Service.

A FastAPI service that turns PDF documents into structured data:
synchronous and asynchronous parse jobs, batches, schema-guided
field extraction and signed webhook notifications.
"""

__version__ = "1.0.0"
