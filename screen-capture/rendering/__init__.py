from rendering.models import NavigationResult, PageSnapshot, StepOutcome
from rendering.engine import (
    BrowserService,
    BrowserSession,
    RenderError,
    RenderTimeoutError,
    RenderExecutionError
)
from rendering.gate import RenderGate
