"""Transition table for multi-request actions."""
from typing import Any, Dict, Optional

from importer.models import InitMode, Phase, RunRequest

DEFAULT_CHUNK_SIZE = 200

# Operation that runs each phase of a logical action
PHASE_OPERATIONS = {
    'import_new': {Phase.DELETE: 'delete_stale', Phase.IMPORT: 'import_new'},
    'import_all': {Phase.DELETE: 'delete_stale', Phase.IMPORT: 'import_all'},
    'reset_all': {Phase.DELETE: 'delete_all', Phase.IMPORT: 'import_all'},
    'delete_all': {Phase.DELETE: 'delete_all'},
    'delete_stale': {Phase.DELETE: 'delete_stale'},
}

SINGLE_REQUEST_ACTIONS = ('import_single', 'clear_cache', 'cancel')


def first_request(
    action: str,
    start_date: Optional[str] = None,
    event_id: Optional[str] = None
) -> RunRequest:
    """
    Build the request that starts a logical action.

    Args:
        action: Logical action name
        start_date: Start date chosen by the operator, if any
        event_id: Event ID for import_single

    Returns:
        RunRequest for the action's first phase

    Raises:
        ValueError: If the action is unknown
    """
    if action == 'import_single':
        return RunRequest(action='import_single', import_action=action, event_id=event_id)
    if action == 'clear_cache':
        return RunRequest(action='clear_cache', import_action=action)
    if action not in PHASE_OPERATIONS:
        raise ValueError(f"Unknown action '{action}'")

    phases = PHASE_OPERATIONS[action]
    first_phase = Phase.DELETE if Phase.DELETE in phases else Phase.IMPORT
    operation = phases[first_phase]
    return RunRequest(
        action=operation,
        import_action=action,
        date=start_date if operation != 'delete_all' else None,
        init=InitMode.HARD
    )


def next_page(processed: int, page: int, chunk_size: int) -> int:
    """
    Pick the page to request next within the import phase.

    A page that was only partially completed is requested again.
    """
    if processed < page * chunk_size:
        return page
    return page + 1


def next_request(
    running_action: str,
    status: Dict[str, Any],
    start_date: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Optional[RunRequest]:
    """
    Decide the next request after a request of a logical action finished.

    Args:
        running_action: Logical action being driven
        status: Status document returned by the control surface
        start_date: Start date chosen by the operator, if any
        chunk_size: Server chunk size

    Returns:
        The next RunRequest, or None when the action is complete
    """
    if running_action in SINGLE_REQUEST_ACTIONS or running_action not in PHASE_OPERATIONS:
        return None

    method = str(status.get('method') or '')
    phase_name = method.split('/')[0]
    processed = int(status.get('processed') or 0)
    total = int(status.get('total') or 0)
    page = int(status.get('page') or 0)

    phases = PHASE_OPERATIONS[running_action]

    if phase_name == Phase.DELETE.value and Phase.DELETE in phases:
        operation = phases[Phase.DELETE]
        if processed < total:
            return RunRequest(
                action=operation,
                import_action=running_action,
                date=start_date if operation == 'delete_stale' else None,
                page=page + 1 if operation == 'delete_all' else None,
                init=InitMode.RESUME
            )
        if Phase.IMPORT in phases:
            return RunRequest(
                action=phases[Phase.IMPORT],
                import_action=running_action,
                date=start_date if phases[Phase.IMPORT] == 'import_new' else None,
                init=InitMode.SOFT
            )
        return None

    if phase_name == Phase.IMPORT.value and Phase.IMPORT in phases:
        if processed < total:
            operation = phases[Phase.IMPORT]
            return RunRequest(
                action=operation,
                import_action=running_action,
                date=start_date if operation == 'import_new' else None,
                page=next_page(processed, page, chunk_size),
                init=InitMode.RESUME
            )
        return None

    return None
