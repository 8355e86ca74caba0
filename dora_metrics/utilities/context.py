from contextvars import ContextVar

# Define a ContextVar to hold the organization name of the current request
organization_ctx: ContextVar[str | None] = ContextVar("organization_name", default=None)


def set_organization_name(organization_name: str | None) -> None:
    """
    Set the organization name in the current context.
    """
    organization_ctx.set(organization_name)


def get_organization_name() -> str | None:
    """
    Get the organization name from the current context.
    """
    return organization_ctx.get()

