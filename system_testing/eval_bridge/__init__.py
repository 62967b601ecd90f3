from system_testing.eval_bridge.service import DEFAULT_EVAL_PORT, EvaluationBridge

__all__ = ['DEFAULT_EVAL_PORT', 'EvaluationBridge']
