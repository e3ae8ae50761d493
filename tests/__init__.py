"""
Test Suite for epicflow

Unit tests per component plus integration tests through EpicFlowContext
(marked `integration`).
"""
