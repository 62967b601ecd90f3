from system_testing.page_helper.service import (
	CommandSubscriptions,
	EvaluationClient,
	PageHelper,
	console_log_message,
)

__all__ = ['CommandSubscriptions', 'EvaluationClient', 'PageHelper', 'console_log_message']
