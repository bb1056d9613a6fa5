# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""History models for tracking applied memory mutations."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

HistoryEvent = Literal["ADD", "UPDATE", "DELETE"]


@dataclass
class HistoryRecord:
    """Represents a single applied mutation of a memory item."""

    memory_id: str
    event: HistoryEvent
    timestamp: float
    owner_id: str | None = None
    old_content: str | None = None
    new_content: str | None = None
    version: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "event": self.event,
            "timestamp": self.timestamp,
            "owner_id": self.owner_id,
            "old_content": self.old_content,
            "new_content": self.new_content,
            "version": self.version,
            "metadata": self.metadata,
        }
