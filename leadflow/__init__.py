"""
LeadFlow - automated conversation engine for lead follow-up.
"""
