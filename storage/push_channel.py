"""SNS mobile push delivery channel."""
import json
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import DeliveryError
from processor.models import PushMessage

logger = logging.getLogger(__name__)


class SnsPushChannel:
    """Sends push notifications to SNS platform endpoints."""

    def __init__(self, region_name: Optional[str] = None):
        self.sns = boto3.client('sns', region_name=region_name)

    def send(self, message: PushMessage) -> str:
        """
        Publish a notification to one device endpoint.

        Args:
            message: PushMessage whose target is an SNS endpoint ARN

        Returns:
            SNS message ID

        Raises:
            DeliveryError: If SNS rejects the message
        """
        try:
            response = self.sns.publish(
                TargetArn=message.target,
                Message=self._build_payload(message),
                MessageStructure='json'
            )
        except (ClientError, BotoCoreError) as e:
            raise DeliveryError(f"Failed to publish to {message.target}: {e}") from e

        message_id = response.get('MessageId', '')
        logger.info(f"Published notification {message_id}")
        return message_id

    @staticmethod
    def _build_payload(message: PushMessage) -> str:
        """Build the per-platform SNS message document."""
        gcm = {
            'notification': {'title': message.title, 'body': message.body},
            'data': message.data
        }
        apns = {
            'aps': {'alert': {'title': message.title, 'body': message.body}},
            **message.data
        }
        return json.dumps({
            'default': f"{message.title}: {message.body}",
            'GCM': json.dumps(gcm),
            'APNS': json.dumps(apns),
            'APNS_SANDBOX': json.dumps(apns)
        })
