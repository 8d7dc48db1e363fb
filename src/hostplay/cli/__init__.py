"""
Hostplay command-line entry points: ``hostplay-playbook`` and ``hostplay-inventory``.
"""
