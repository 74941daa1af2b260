"""
Lifecycle operation result models.

Decouple the orchestrator's outcomes from FastAPI Response objects.
"""

from pydantic import BaseModel

from services.common.models.function_app import FunctionApp


class StartResult(BaseModel):
    """
    Outcome of a start request.
    """

    app: FunctionApp
    already_running: bool = False

    @property
    def message(self) -> str:
        if self.already_running:
            return f"Function app {self.app.name} is already running on port {self.app.port}"
        return f"Function app {self.app.name} started on port {self.app.port}"
