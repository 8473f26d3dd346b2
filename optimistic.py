import logging


def with_optimistic_update(patch_fn, inverse_patch_fn, remote_call):
    """Apply a tentative local patch, run the remote call, undo the patch on failure.

    The remote call's exception is re-raised after the rollback so the caller
    can report it.
    """
    patch_fn()
    try:
        return remote_call()
    except Exception:
        try:
            inverse_patch_fn()
        except Exception as rollback_error:
            logging.error(f"Optimistic rollback failed: {rollback_error}")
        raise
