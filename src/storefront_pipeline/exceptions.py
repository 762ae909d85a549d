"""Exception hierarchy for request pipeline failures."""


class PipelineError(Exception):
    """Base exception for all request pipeline errors.

    This is the parent class for all exceptions raised by the
    storefront-pipeline package. Catching this exception will catch
    every failure a pipeline stage can signal.

    Example:
        try:
            await chain(ctx)
        except PipelineError as e:
            logger.error(f"Pipeline failed: {e}")
    """


class StoreUnavailable(PipelineError):
    """Raised when the session store or user store cannot be reached.

    Covers connection errors, query errors, and lookups that exceed the
    configured store timeout. Always fatal for the current request: the
    error boundary answers with the Internal Error response.

    A lookup that succeeds but finds nothing is NOT this error; absence
    is handled as an anonymous or first-visit request.

    Example:
        StoreUnavailable("session load timed out after 2.0s")
    """


class InvalidCsrfToken(PipelineError):
    """Raised when a state-changing request carries a wrong CSRF token.

    The token may be missing, empty, mismatched, or issued for a
    different session. Raised before any route handler runs.

    Example:
        InvalidCsrfToken("invalid csrf token for POST /admin/add-product")
    """


class UploadWriteFailure(PipelineError):
    """Raised when an accepted upload cannot be written to its destination.

    Rejected uploads (disallowed content type) never raise; only a
    failure to physically store an accepted file does.

    Example:
        UploadWriteFailure("Failed to store upload in /srv/images: Permission denied")
    """


class PipelineConfigurationError(PipelineError):
    """Raised when the pipeline is installed with invalid configuration.

    Typical causes:
        - A non-callable or synchronous entry in extra_stages
        - A route dependency used on an app without the pipeline installed
        - A stage chain that does not start with the session resolver

    Example:
        PipelineConfigurationError("extra_stages: non-callable stage at index 0")
    """
