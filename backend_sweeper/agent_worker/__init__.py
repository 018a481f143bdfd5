"""
Agent worker: tier scheduling, deposit scanning, gas distribution, sweeping,
withdrawal settlement and the automation loop that drives them.
"""
