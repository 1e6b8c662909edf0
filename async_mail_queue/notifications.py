"""Shortcuts for the notifications the site sends.

Each helper only builds the subject, the template name and the template data
and hands them to :meth:`AsyncMailQueue.enqueue`; nothing is delivered here.
Template data lives under ``payload["data"]``.
"""

from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

DEFAULT_SITE_URL = "https://forexfactory.cc"


def _display_name(user: Mapping[str, Any], fallback: Optional[str] = None) -> str:
    name = user.get("name") or user.get("username")
    if name:
        return str(name)
    if fallback is not None:
        return fallback
    return str(user["email"]).split("@")[0]


def queue_welcome_email(queue, user: Mapping[str, Any], site_url: str = DEFAULT_SITE_URL) -> str:
    """Queue the welcome mail sent after sign-up."""
    return queue.enqueue(
        user["email"],
        "Welcome to ForexFactory - Your Free Forex Resources Await!",
        {
            "data": {
                "userName": _display_name(user),
                "subscribed": bool(user.get("subscribeToNewPosts", False)),
                "loginUrl": f"{site_url}/login",
                "downloadsUrl": f"{site_url}/downloads",
            }
        },
        template="welcome",
    )


def queue_verification_email(queue, user: Mapping[str, Any], token: str, site_url: str = DEFAULT_SITE_URL) -> str:
    """Queue the e-mail address verification link."""
    if not token:
        raise ValueError("verification token is required")
    return queue.enqueue(
        user["email"],
        "Verify Your Email - ForexFactory",
        {
            "data": {
                "userName": _display_name({"name": user.get("name"), "email": user["email"]}),
                "verificationUrl": f"{site_url}/verify-email?token={token}",
                "validFor": "24 hours",
            }
        },
        template="email-verification",
    )


def queue_new_post_notification(
    queue,
    post: Mapping[str, Any],
    subscribers: Iterable[Mapping[str, Any]],
    site_url: str = DEFAULT_SITE_URL,
) -> List[str]:
    """Queue one post-publish alert per subscriber and return the message ids."""
    data: Dict[str, Any] = {
        "postTitle": post["title"],
        "postExcerpt": post.get("excerpt"),
        "postUrl": f"{site_url}/blog/{post['slug']}",
        "postImage": post.get("thumbnail"),
        "hasDownload": bool(post.get("hasDownload", False)),
        "unsubscribeUrl": f"{site_url}/unsubscribe",
    }
    ids: List[str] = []
    for subscriber in subscribers:
        payload = {"data": dict(data, userName=_display_name(subscriber, "Subscriber"))}
        ids.append(
            queue.enqueue(
                subscriber["email"],
                f"New: {post['title']} - ForexFactory",
                payload,
                template="blog-notification",
            )
        )
    return ids


def queue_test_email(queue, recipient: str) -> str:
    """Queue a plain test message, used by the admin dashboard."""
    return queue.enqueue(
        recipient,
        "ForexFactory test email",
        {
            "text": "This is a test message from the ForexFactory notification queue.",
            "html": "<p>This is a test message from the <strong>ForexFactory</strong> notification queue.</p>",
        },
    )


def queue_password_reset_email(queue, user: Mapping[str, Any], token: str, site_url: str = DEFAULT_SITE_URL) -> str:
    """Queue the password reset link, valid for one hour."""
    if not token:
        raise ValueError("reset token is required")
    return queue.enqueue(
        user["email"],
        "Password Reset Request - ForexFactory",
        {
            "data": {
                "userName": _display_name(user),
                "resetUrl": f"{site_url}/reset-password?token={token}",
                "validFor": "1 hour",
            }
        },
        template="password-reset",
    )


def queue_newsletter(
    queue,
    recipients: Iterable[Union[str, Mapping[str, Any]]],
    subject: str,
    content: str,
    featured_posts: Optional[Iterable[Mapping[str, Any]]] = None,
    site_url: str = DEFAULT_SITE_URL,
) -> List[str]:
    """Queue the newsletter digest, one message per recipient."""
    data: Dict[str, Any] = {
        "content": content,
        "featuredPosts": [
            {
                "title": post["title"],
                "excerpt": post.get("excerpt") or str(post.get("content", ""))[:150],
                "url": f"{site_url}/blog/{post['slug']}",
                "image": post.get("thumbnail"),
            }
            for post in featured_posts or ()
        ],
        "unsubscribeUrl": f"{site_url}/unsubscribe",
        "currentYear": datetime.date.today().year,
    }
    return _queue_bulk(queue, recipients, subject, "newsletter", data)


def queue_signal_alert(
    queue,
    signal: Mapping[str, Any],
    subscribers: Iterable[Union[str, Mapping[str, Any]]],
    site_url: str = DEFAULT_SITE_URL,
) -> List[str]:
    """Queue a new trading signal alert for every subscriber."""
    data: Dict[str, Any] = {
        "signalTitle": signal["title"],
        "signalDescription": signal.get("description"),
        "platform": signal.get("platform"),
        "strategy": signal.get("strategy"),
        "downloadUrl": f"{site_url}/download/{signal['uuid']}",
        "isPremium": bool(signal.get("isPremium", False)),
        "price": signal.get("price"),
        "unsubscribeUrl": f"{site_url}/unsubscribe",
    }
    return _queue_bulk(queue, subscribers, f"New Trading Signal: {signal['title']}", "signal-alert", data)


def _queue_bulk(
    queue,
    recipients: Iterable[Union[str, Mapping[str, Any]]],
    subject: str,
    template: str,
    data: Mapping[str, Any],
) -> List[str]:
    ids: List[str] = []
    for recipient in recipients:
        if isinstance(recipient, str):
            recipient = {"email": recipient}
        payload = {"data": dict(data, userName=_display_name(recipient, "Subscriber"))}
        ids.append(queue.enqueue(recipient["email"], subject, payload, template=template))
    return ids
