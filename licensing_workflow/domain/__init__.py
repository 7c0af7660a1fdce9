# SPDX-License-Identifier: Apache-2.0

"""
Domain logic package for the licensing workflow.

Transition tables, role capabilities and deadline maths are pure; the
RequestStateMachine and AuditVersionWorkflow components reach storage and
notifications only through the collaborators they are constructed with.
"""
