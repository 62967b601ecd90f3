import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from system_testing.exceptions import ProtocolError

EnvelopeType = Literal['command', 'response']


class CommandEnvelope(BaseModel):
	"""One JSON message on the wire.

	Commands carry `{type: <command-name>, ...}` in `data`, responses carry
	`{result}` or `{error}`.
	"""

	model_config = ConfigDict(extra='ignore')

	type: EnvelopeType
	id: int
	data: dict[str, Any] = Field(default_factory=dict)

	def to_json(self) -> str:
		return json.dumps(self.model_dump())

	@classmethod
	def from_json(cls, raw: str | bytes) -> 'CommandEnvelope | None':
		"""Parse one inbound message.

		Returns None for transport-injected messages flagged `isTrusted`, raises
		ProtocolError for anything that is not a well-formed envelope.
		"""
		try:
			payload = json.loads(raw)
		except (TypeError, ValueError) as e:
			raise ProtocolError(f'Invalid JSON in envelope: {e}') from e

		if not isinstance(payload, dict):
			raise ProtocolError(f'Envelope must be a JSON object: {raw!r}')

		if payload.get('isTrusted'):
			return None

		envelope_type = payload.get('type')
		if envelope_type not in ('command', 'response'):
			raise ProtocolError(f'Unknown type for CommandChannel: {envelope_type}: {json.dumps(payload)}')

		try:
			return cls.model_validate(payload)
		except ValidationError as e:
			raise ProtocolError(f'Malformed {envelope_type} envelope: {e}') from e

	@property
	def command_type(self) -> str | None:
		return self.data.get('type') if self.type == 'command' else None
