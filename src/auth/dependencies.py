from fastapi import Depends, Header, HTTPException, status
from src.auth.schemas import Actor, ActorRole

def get_current_actor(
    x_actor_id: str = Header(..., description="Identifier of the acting user"),
    x_actor_role: str = Header(..., description="Role of the acting user")
) -> Actor:
    """Resolve the acting user from request headers.

    Authentication happens upstream (gateway or the web front end); this
    service only needs to know who is acting and in which role.
    """
    actor_id = x_actor_id.strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Actor identity required"
        )

    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown actor role: {x_actor_role}"
        )

    return Actor(id=actor_id, role=role)

def require_privileged(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require a station operator, backoffice or system actor"""
    if not actor.is_privileged:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions"
        )
    return actor
