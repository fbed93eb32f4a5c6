import logging
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import create_token, hash_password, verify_password
from database import NEWEST_FIRST, create_document, get_documents, oid, serialize, utcnow
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from schemas import ROLES, User

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = ("password", "pushToken")


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize(doc)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def _auth_response(doc: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    return public_user(doc), create_token(doc)


def _find_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFoundError("User not found!")
    return user


def _validate_user(data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        user = User(**data)
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid user", errors=[err["msg"] for err in exc.errors()])
    return user.model_dump(by_alias=True, exclude_none=True)


def _check_unique(db: Database, email: str, username: str, firebase_uid: Optional[str] = None, exclude_id=None) -> None:
    clauses = [{"email": email}, {"username": username}]
    if firebase_uid:
        clauses.append({"firebaseUid": firebase_uid})
    query: Dict[str, Any] = {"$or": clauses}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["user"].find_one(query, {"_id": 1}):
        raise ConflictError("User with this email or username already exists")


def _create_user(db: Database, username: str, email: str, password: str, role: str, firebase_uid: Optional[str]) -> Dict[str, Any]:
    email = email.strip().lower()
    _check_unique(db, email, username, firebase_uid)
    doc = _validate_user({
        "username": username,
        "email": email,
        "password": hash_password(password),
        "role": role,
        "firebaseUid": firebase_uid,
    })
    try:
        user_id = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise ConflictError("User with this email or username already exists")
    logger.info("Created %s account %s (%s)", role, user_id, username)
    return _find_user(db, user_id)


def register_user(
    db: Database,
    username: Optional[str],
    email: Optional[str],
    password: Optional[str],
    firebase_uid: Optional[str] = None,
) -> Tuple[Dict[str, Any], str]:
    if not username or not email or not password:
        raise ValidationError("All fields are required")
    return _auth_response(_create_user(db, username, email, password, "customer", firebase_uid))


def admin_create_user(
    db: Database,
    username: Optional[str],
    email: Optional[str],
    password: Optional[str],
    role: Optional[str] = None,
    firebase_uid: Optional[str] = None,
) -> Tuple[Dict[str, Any], str]:
    if not username or not email or not password:
        raise ValidationError("Fields username, email and password are required.")
    if role and role not in ROLES:
        raise ValidationError(f"Invalid role provided. Valid roles are: {', '.join(ROLES)}")
    return _auth_response(_create_user(db, username, email, password, role or "customer", firebase_uid))


def login_user(db: Database, email: Optional[str], password: Optional[str]) -> Tuple[Dict[str, Any], str]:
    if not email or not password:
        raise ValidationError("Email and password are required")
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password", "")):
        raise AuthError("Invalid email or password")
    return _auth_response(user)


def google_auth(db: Database, email: Optional[str], firebase_uid: Optional[str]) -> Tuple[Dict[str, Any], str]:
    """Sign in a user already registered with this Firebase UID or email."""
    clauses = []
    if firebase_uid:
        clauses.append({"firebaseUid": firebase_uid})
    if email:
        clauses.append({"email": email.strip().lower()})
    if not clauses:
        raise ValidationError("Email or firebaseUid is required")
    user = db["user"].find_one({"$or": clauses})
    if not user:
        raise NotFoundError("User not found. Please register first.")
    return _auth_response(user)


def login_admin(db: Database, username: Optional[str], password: Optional[str]) -> Tuple[Dict[str, Any], str]:
    if not username or not password:
        raise ValidationError("Username and password are required")
    admin = db["user"].find_one({"username": username})
    if not admin:
        raise NotFoundError("Admin not found!")
    if admin.get("role") != "admin":
        raise AuthError("Access denied. Not an admin.", status_code=403)
    if not verify_password(password, admin.get("password", "")):
        raise AuthError("Invalid password")
    return _auth_response(admin)


def list_users(db: Database) -> List[Dict[str, Any]]:
    return [public_user(u) for u in get_documents(db, "user", sort=NEWEST_FIRST)]


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    return public_user(_find_user(db, user_id))


def update_user(db: Database, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    existing = _find_user(db, user_id)
    updates = {k: v for k, v in updates.items() if k not in ("_id", "id", "createdAt", "updatedAt")}
    if updates.get("password"):
        updates["password"] = hash_password(updates["password"])
    else:
        updates.pop("password", None)
    if updates.get("email"):
        updates["email"] = updates["email"].strip().lower()

    merged = {k: v for k, v in existing.items() if k not in ("_id", "createdAt", "updatedAt")}
    merged.update(updates)
    doc = _validate_user(merged)
    _check_unique(db, doc["email"], doc["username"], doc.get("firebaseUid"), exclude_id=existing["_id"])

    doc["updatedAt"] = utcnow()
    db["user"].update_one({"_id": existing["_id"]}, {"$set": doc})
    logger.info("Updated user %s (%s)", user_id, ", ".join(sorted(updates)) or "no fields")
    return get_user(db, user_id)


def delete_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one_and_delete({"_id": oid(user_id)})
    if not user:
        raise NotFoundError("User not found!")
    db["orderlist"].delete_many({"user": user_id})
    logger.info("Deleted user %s", user_id)
    return public_user(user)


# ---------------- push tokens ----------------

def strip_push_token(token: str) -> str:
    token = token.strip()
    for prefix in ("ExponentPushToken[", "ExpoPushToken["):
        if token.startswith(prefix) and token.endswith("]"):
            return token[len(prefix):-1]
    return token


def set_push_token(db: Database, user_id: str, token: Optional[str]) -> None:
    if not token:
        raise ValidationError("Push token is required")
    db["user"].update_one({"_id": oid(user_id)}, {"$set": {"pushToken": strip_push_token(token), "updatedAt": utcnow()}})


def remove_push_token(db: Database, user_id: str) -> None:
    db["user"].update_one({"_id": oid(user_id)}, {"$unset": {"pushToken": ""}})


def get_push_token(db: Database, user_id: str) -> Optional[str]:
    try:
        _id = ObjectId(user_id)
    except (InvalidId, TypeError):
        return None
    user = db["user"].find_one({"_id": _id}, {"pushToken": 1})
    return user.get("pushToken") if user else None


# ---------------- courier applications ----------------

def apply_courier(
    db: Database,
    user: Dict[str, Any],
    vehicle_info: Optional[str],
    service_area: Optional[Dict[str, Any]],
    valid_id: Optional[str],
) -> Dict[str, Any]:
    if not vehicle_info or not valid_id:
        raise ValidationError("Vehicle info and a valid ID are required")
    courier = user.get("courier") or {}
    if courier.get("applicationStatus") == "pending":
        raise ValidationError("A courier application is already pending")
    area = service_area or {}
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "courier.applicationStatus": "pending",
        "courier.applicationDate": utcnow(),
        "courier.approvalDate": None,
        "courier.vehicleInfo": vehicle_info,
        "courier.serviceArea": {"country": area.get("country"), "city": area.get("city")},
        "courier.validId": valid_id,
        "updatedAt": utcnow(),
    }})
    logger.info("User %s applied as courier", user["_id"])
    return get_user(db, str(user["_id"]))


def _decide_application(db: Database, user_id: str, approve: bool) -> Dict[str, Any]:
    user = _find_user(db, user_id)
    if (user.get("courier") or {}).get("applicationStatus") != "pending":
        raise ValidationError("No pending courier application")
    changes: Dict[str, Any] = {"updatedAt": utcnow()}
    if approve:
        changes.update({
            "role": "courier",
            "courier.applicationStatus": "approved",
            "courier.approvalDate": utcnow(),
            "courier.isAvailable": True,
        })
    else:
        changes["courier.applicationStatus"] = "rejected"
    db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    logger.info("Courier application of %s %s", user_id, "approved" if approve else "rejected")
    return get_user(db, user_id)


def approve_courier(db: Database, user_id: str) -> Dict[str, Any]:
    return _decide_application(db, user_id, True)


def reject_courier(db: Database, user_id: str) -> Dict[str, Any]:
    return _decide_application(db, user_id, False)
