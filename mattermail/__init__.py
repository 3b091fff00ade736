# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""MatterMail: post incoming mail to a Mattermost channel.

Watches an IMAP mailbox (IDLE with polling fallback), converts each new
message into a chat post with the mail body and attachments as files, and
publishes it to a configured channel.
"""

__version__ = "0.4.0"
