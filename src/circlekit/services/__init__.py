"""Business logic services for the circlekit application.

Modules are imported directly (``circlekit.services.membership`` and so on).
Nothing is re-exported here: ``circlekit.db`` imports
:mod:`circlekit.services.change_feed` and must not pull in the rest.
"""
