class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

class NotFoundError(AppError):
    """Raised when a resource is not found."""
    def __init__(self, message: str):
        super().__init__(message, status_code=404)

class ValidationError(AppError):
    """Raised when input validation fails."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)

class ConflictError(AppError):
    """Raised when an operation conflicts with existing state."""
    def __init__(self, message: str):
        super().__init__(message, status_code=409)

##### TABLE EXCEPTIONS #####

class TableNotFoundError(NotFoundError):
    """Raised when a table is not found."""
    def __init__(self, table_ref):
        super().__init__(f"Table {table_ref} not found")
        self.table_ref = table_ref

class RowNotFoundError(NotFoundError):
    """Raised when a row is not found in a table."""
    def __init__(self, row_id: int, table_id: int):
        super().__init__(f"Row {row_id} not found in table {table_id}")
        self.row_id = row_id
        self.table_id = table_id

class DuplicateTableError(ConflictError):
    """Raised when a table name is already taken."""
    def __init__(self, name: str):
        super().__init__(f"Table '{name}' already exists")

class RowLimitError(ValidationError):
    """Raised when an insert would exceed the per-table row cap."""
    def __init__(self, table_id: int, limit: int):
        super().__init__(f"Table {table_id} has reached the maximum of {limit} rows")

##### COLUMN EXCEPTIONS #####

class InvalidColumnError(ValidationError):
    """Raised when a column definition or column reference is invalid."""
    pass

class DependencyCycleError(ValidationError):
    """Raised when computed columns would depend on each other in a cycle."""
    def __init__(self, column_ids):
        super().__init__(f"Computed columns form a dependency cycle: {', '.join(column_ids)}")
        self.column_ids = list(column_ids)

class ColumnDependencyError(ConflictError):
    """Raised when a column cannot be dropped because computed columns use it."""
    def __init__(self, column_id: str, dependents):
        super().__init__(
            f"Column {column_id} is used by computed columns: {', '.join(sorted(dependents))}"
        )
        self.column_id = column_id
        self.dependents = set(dependents)

##### FUNCTION EXCEPTIONS #####

class FunctionNotFoundError(NotFoundError):
    """Raised when a column function is not registered."""
    def __init__(self, name: str):
        super().__init__(f"Function {name} not found")

class ComputedColumnError(AppError):
    """Raised when evaluating a computed column fails under the abort policy."""
    def __init__(self, column_id: str, cause: Exception):
        super().__init__(
            f"Computed column {column_id} failed: {type(cause).__name__}: {cause}",
            status_code=422,
        )
        self.column_id = column_id
        self.cause = cause

##### TOOL EXCEPTIONS #####

class ToolNotFoundError(NotFoundError):
    """Raised when a tool is not found."""
    def __init__(self, tool_id: str):
        super().__init__(f"Tool {tool_id} not found")

##### AGENT EXCEPTIONS #####

class AgentNotFoundError(NotFoundError):
    """Raised when an agent is not found."""
    def __init__(self, name: str):
        super().__init__(f"Agent {name} not found")

class DuplicateAgentError(ConflictError):
    """Raised when an agent name is already taken."""
    def __init__(self, name: str):
        super().__init__(f"Agent '{name}' already exists")

class AgentRunError(AppError):
    """Raised when an agent turn ends in an error."""
    def __init__(self, message: str):
        super().__init__(message, status_code=502)

##### EXPORT EXCEPTIONS #####

class ExportError(ValidationError):
    """Raised when a table cannot be exported in the requested format."""
    pass
