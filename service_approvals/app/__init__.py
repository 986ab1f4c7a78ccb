"""
Plan approvals service: rule compilation and the draft approval workflow.
"""
