"""
Key Builder Module

This module provides utilities for creating standardized store keys.
"""

from typing import Any, Optional, Union


class KeyBuilder:
    """
    Utility for building standardized store keys.

    Keys are colon-separated, optionally namespaced and versioned.
    """

    @staticmethod
    def build(*parts: Any, namespace: Optional[str] = None,
              version: Optional[str] = None) -> str:
        """
        Build a key from parts.

        Args:
            *parts: Parts of the key (ids or names), converted to strings and joined
            namespace: Optional namespace for the key
            version: Optional version string for the key

        Returns:
            A colon-separated key string
        """
        processed_parts = []

        if namespace:
            processed_parts.append(str(namespace))

        for part in parts:
            if part is None:
                processed_parts.append("null")
            else:
                processed_parts.append(str(part))

        if version:
            processed_parts.append(f"v{version}")

        return ":".join(processed_parts)

    @staticmethod
    def attempt_key(kind: str, user_id: Union[str, int],
                    assessment_id: Union[str, int]) -> str:
        """
        Build the key of the in-progress attempt record of one user on one
        assessment.

        Args:
            kind: Assessment kind (``quiz`` or ``skill_test``)
            user_id: ID of the user taking the attempt
            assessment_id: ID of the assessment

        Returns:
            A key such as ``quiz-attempt:17:42``
        """
        namespace = f"{kind.replace('_', '-')}-attempt"
        return KeyBuilder.build(user_id, assessment_id, namespace=namespace)
