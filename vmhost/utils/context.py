"""Context management for structured logging and tracing.

Context variables propagate the current request and the VM being operated
on through the lifecycle code, including into the background readiness and
shutdown tasks spawned from a request (asyncio copies the context when a
task is created).
"""

import contextvars
from contextlib import contextmanager
from typing import Optional, Any, Dict
from opentelemetry import trace

request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
vm_name_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "vm_name", default=None
)
action_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "action", default=None
)


def set_context(
    request_id: Optional[str] = None,
    vm_name: Optional[str] = None,
    action: Optional[str] = None,
) -> None:
    """Set context variables.

    Args:
        request_id: Unique request identifier
        vm_name: Name of the VM being operated on
        action: Operation being performed (e.g., 'vm.start', 'vm.delete')
    """
    if request_id is not None:
        request_id_var.set(request_id)
    if vm_name is not None:
        vm_name_var.set(vm_name)
    if action is not None:
        action_var.set(action)


def get_context() -> Dict[str, Any]:
    """Get all current context values as a dictionary.

    Returns:
        Dictionary with all non-None context values
    """
    context = {}

    request_id = request_id_var.get()
    if request_id:
        context["request_id"] = request_id

    vm_name = vm_name_var.get()
    if vm_name:
        context["vm_name"] = vm_name

    action = action_var.get()
    if action:
        context["action"] = action

    return context


def get_request_id() -> Optional[str]:
    """Get current request ID."""
    return request_id_var.get()


def get_vm_name() -> Optional[str]:
    """Get current VM name."""
    return vm_name_var.get()


def get_action() -> Optional[str]:
    """Get current action."""
    return action_var.get()


def clear_context() -> None:
    """Clear all context variables."""
    request_id_var.set(None)
    vm_name_var.set(None)
    action_var.set(None)


@contextmanager
def operation_context(
    action: str,
    vm_name: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """Context manager for setting operation context with automatic cleanup.

    The action and VM name are also recorded on the current span.

    Example:
        with operation_context("vm.start", vm_name="web01"):
            logger.info("Starting VM")
    """
    tokens = [action_var.set(action)]
    if vm_name is not None:
        tokens.append(vm_name_var.set(vm_name))
    if request_id is not None:
        tokens.append(request_id_var.set(request_id))

    try:
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("action", action)
            if vm_name:
                span.set_attribute("vm.name", vm_name)

        yield

    finally:
        for token in reversed(tokens):
            token.var.reset(token)


def get_trace_context() -> Dict[str, str]:
    """Get current OpenTelemetry trace context.

    Returns:
        Dictionary with trace_id and span_id (if available)
    """
    context = {}

    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        if span_context.is_valid:
            context["trace_id"] = format(span_context.trace_id, "032x")
            context["span_id"] = format(span_context.span_id, "016x")

    return context
