"""
Trade and custody orchestration.

`service.Orchestrator` owns request status and the timers that drive it;
`state_machine` defines which transitions are legal.
"""
