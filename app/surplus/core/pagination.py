from dataclasses import dataclass

from app.surplus.core.error_catalog import AppError, ErrorCatalog


@dataclass(frozen=True)
class PageRequest:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def resolve_page(page: int | None, page_size: int | None, *, max_page_size: int, default_page_size: int = 20) -> PageRequest:
    page = 1 if page is None else page
    page_size = default_page_size if page_size is None else page_size
    if page < 1:
        raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"message": "page must be >= 1", "field": "page"})
    if page_size < 1 or page_size > max_page_size:
        raise AppError(
            ErrorCatalog.VALIDATION_ERROR,
            details={"message": f"page_size must be between 1 and {max_page_size}", "field": "page_size"},
        )
    return PageRequest(page=page, page_size=page_size)
