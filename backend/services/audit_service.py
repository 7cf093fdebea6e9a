import json

from sqlalchemy.orm import Session

from db.models import AdminAuditLog, User


def record_admin_action(
    db: Session,
    admin_user_id: int,
    action: str,
    target_user_id: int | None = None,
    details: dict | None = None,
    success: bool = True,
) -> None:
    row = AdminAuditLog(
        admin_user_id=admin_user_id,
        target_user_id=target_user_id,
        action=action,
        details_json=json.dumps(details or {}, ensure_ascii=True),
        success=success,
    )
    db.add(row)


def recent_admin_actions(db: Session, *, limit: int = 100) -> list[dict]:
    rows = db.query(AdminAuditLog).order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).limit(limit).all()
    user_ids = {r.admin_user_id for r in rows if r.admin_user_id} | {r.target_user_id for r in rows if r.target_user_id}
    users = db.query(User.id, User.username).filter(User.id.in_(list(user_ids))).all() if user_ids else []
    user_map = {u.id: u.username for u in users}
    return [
        {
            "id": r.id,
            "action": r.action,
            "success": bool(r.success),
            "createdAt": r.created_at.isoformat() if r.created_at else None,
            "adminUsername": user_map.get(r.admin_user_id, f"user:{r.admin_user_id}"),
            "targetUsername": user_map.get(r.target_user_id) if r.target_user_id else None,
            "detailsJson": r.details_json,
        }
        for r in rows
    ]
