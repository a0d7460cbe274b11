"""FastAPI REST API for Dealhook.

This module provides webhook registration, delivery inspection and
manual retry endpoints.

Example:
    ```python
    import uvicorn
    from dealhook.api import create_app

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
    ```

Or run directly:
    ```bash
    uvicorn dealhook.api:app --reload
    ```
"""

from .app import app, create_app
from .router import router

__all__ = [
    "app",
    "create_app",
    "router",
]
