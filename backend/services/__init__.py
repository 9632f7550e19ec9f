# Services are imported directly where needed:
# from services.tokens import TokenService
# from services.blacklist import create_blacklist
# from services.store import create_store

__all__ = []
