from .types import DOCUMENT_TYPES, DocumentType, DocumentTypeRegistry, get_registry

__all__ = ["DOCUMENT_TYPES", "DocumentType", "DocumentTypeRegistry", "get_registry"]
