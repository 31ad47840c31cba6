"""
HTTP routes for PrintCloud device integration.
"""
from printcloud.routes.printer_integration import printer_integration_bp

__all__ = ['printer_integration_bp']
