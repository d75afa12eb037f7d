# -*- coding: utf-8 -*-
"""
InsiderGuard
============

Insider-risk and compliance monitoring core. The ``policy_engine``
subpackage resolves which organizational policies apply to a monitored
subject, evaluates their trigger conditions against incoming security
events, and schedules, executes and audits the resulting remediation
actions.
"""

__version__ = "1.0.0"
