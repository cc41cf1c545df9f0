"""Stage implementations: the work behind each build stage's steps.

Stage modules in `shipyard.stages` wire these functions into pipeline blocks;
nothing here knows about blocks, capture keys or stage config.
"""
