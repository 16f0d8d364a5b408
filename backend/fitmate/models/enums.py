"""Enumerations stored as plain strings in the database"""
import enum


class Role(str, enum.Enum):
    """Account roles. Membership tiers are purchasable; TRAINER and ADMIN are not."""
    USER = "USER"
    USER_BRONZE = "USER_BRONZE"
    USER_GOLD = "USER_GOLD"
    USER_PLATINUM = "USER_PLATINUM"
    TRAINER = "TRAINER"
    ADMIN = "ADMIN"


class PurchaseStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
