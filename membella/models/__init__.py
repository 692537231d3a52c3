"""
Models package for the application.
"""

# Import all models in the correct order to avoid circular dependencies

# First, import base models without relationships
from membella.models.user_models import Owner, Member

# Then import models that depend on the base models
from membella.models.plan_models import Plan
from membella.database.subscription import Payment, Subscription

# This ensures all models are imported and registered with SQLAlchemy
__all__ = ['Owner', 'Member', 'Plan', 'Payment', 'Subscription']
