# Startup data: default membership plans and the platform super admin.
import logging

from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .database import SessionLocal
from . import crud, models

logger = logging.getLogger(__name__)


def create_initial_data():
    """Creates the default membership plans if none exist."""
    db = SessionLocal()
    try:
        created = crud.seed_membership_plans(db)
        if created:
            logger.info(f"Seeded {created} membership plans.")
    except crud.CRUDError as e:
        logger.error(f"CRITICAL: Error during initial data creation: {e}")
    finally:
        db.close()


def create_or_update_admin():
    """
    Ensures the super admin from SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD exists and is active.
    Imports security locally; it pulls in crud and the request dependencies.
    """
    from .security import get_password_hash, verify_password

    settings = get_settings()
    if not settings.seed_admin_email or not settings.seed_admin_password:
        logger.warning("SEED_ADMIN_EMAIL or SEED_ADMIN_PASSWORD not set. Super admin not created.")
        return

    db = SessionLocal()
    try:
        user = crud.get_user_by_email(db, settings.seed_admin_email)
        if user:
            user.role = models.UserRole.super_admin
            user.is_active = True
            # Only rehash when the configured password changed
            if not verify_password(settings.seed_admin_password, user.password_hash):
                user.password_hash = get_password_hash(settings.seed_admin_password)
            db.commit()
            logger.info("Super admin verified/updated.")
        else:
            crud.create_user(
                db,
                email=settings.seed_admin_email,
                full_name="Platform Administrator",
                password_hash=get_password_hash(settings.seed_admin_password),
                role=models.UserRole.super_admin,
            )
            logger.info("Super admin created.")
    except (SQLAlchemyError, crud.CRUDError) as e:
        db.rollback()
        logger.error(f"CRITICAL: Error during admin user initialization: {e}")
    finally:
        db.close()
