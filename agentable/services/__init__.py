from .table_service import TableService, get_table_service
from .row_service import RowService, get_row_service

__all__ = [
    'TableService',
    'RowService',
    'get_table_service',
    'get_row_service',
]
