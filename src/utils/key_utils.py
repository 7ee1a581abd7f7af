"""
Namespaced key helpers for the key-value store.

Entity keys combine kind, project id and a random suffix
(e.g. ``campaign:<project>:<uuid>``); list indexes are separate keys.
"""
import uuid


def new_key(kind: str, project_id: str) -> str:
    return f"{kind}:{project_id}:{uuid.uuid4()}"


def project_id_from_key(key: str) -> str:
    parts = key.split(":")
    if len(parts) < 3:
        raise ValueError(f"Key '{key}' is not namespaced")
    return parts[1]


def guest_key(project_id: str, guest_id: str) -> str:
    return f"guest:{project_id}:{guest_id}"


def guests_list_key(project_id: str) -> str:
    return f"guests:list:{project_id}"


def template_key(project_id: str, template_id: str) -> str:
    return f"template:{project_id}:{template_id}"


def campaigns_list_key(project_id: str) -> str:
    return f"campaigns:list:{project_id}"


def chatflows_list_key(project_id: str) -> str:
    return f"chatflows:list:{project_id}"


def executions_list_key(campaign_id: str) -> str:
    return f"executions:list:{campaign_id}"


def campaign_messages_list_key(campaign_id: str) -> str:
    return f"messages:list:{campaign_id}"


def execution_messages_list_key(execution_id: str) -> str:
    return f"messages:list:execution:{execution_id}"


def guest_session_key(guest_id: str) -> str:
    return f"session:guest:{guest_id}"


def active_sessions_key(project_id: str) -> str:
    return f"sessions:active:{project_id}"


def guest_invitations_key(guest_id: str) -> str:
    return f"pending_invitations:guest:{guest_id}"


def campaign_invitations_key(campaign_id: str) -> str:
    return f"pending_invitations:campaign:{campaign_id}"


def dispatch_key(execution_id: str, node_id: str) -> str:
    return f"dispatch:{execution_id}:{node_id}"


JOB_PREFIX = "job:"


def job_key(execution_id: str, node_id: str, job_type: str) -> str:
    return f"{JOB_PREFIX}{execution_id}:{node_id}:{job_type}"


REMINDER_PREFIX = "reminder:"


def reminders_list_key(campaign_id: str) -> str:
    return f"reminders:list:{campaign_id}"
