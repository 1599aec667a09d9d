"""
Field staff records (sellers, merchandisers).

Only the tables live here; rows are written by the provisioning module.
"""
