from .legacy_qr import LegacyQrRedirectMiddleware

__all__ = ["LegacyQrRedirectMiddleware"]
