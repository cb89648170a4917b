"""
邮件服务：密码重置邮件与 SMTP 配置测试邮件（aiosmtplib）。
"""

import logging
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from databoard.errors import MailError
from databoard.settings import MailSettings, SettingsManager

logger = logging.getLogger(__name__)

RESET_TOKEN_MINUTES = 30


def _build_message(config: MailSettings, to: str, subject: str, text: str, html: str) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["From"] = config.from_address or config.auth_user
    message["To"] = to
    message["Subject"] = subject
    message.attach(MIMEText(text, "plain", "utf-8"))
    message.attach(MIMEText(html, "html", "utf-8"))
    return message


class MailService:
    def __init__(self, settings: SettingsManager, frontend_url: str = "http://localhost:5000"):
        self._settings = settings
        self.frontend_url = frontend_url.rstrip("/")

    async def _deliver(self, config: MailSettings, message: MIMEMultipart):
        try:
            await aiosmtplib.send(
                message,
                hostname=config.host,
                port=config.port,
                username=config.auth_user or None,
                password=config.auth_pass or None,
                use_tls=config.secure,
                timeout=30,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"[Mail] 发送到 {message['To']} 失败: {e}")
            raise MailError(f"Failed to send email: {e}")
        logger.info(f"[Mail] 已发送到 {message['To']}: {message['Subject']}")

    async def send_test(self, config: MailSettings, to: str) -> bool:
        """用给定配置（可能尚未保存）发送测试邮件。"""
        if not config.enabled:
            raise MailError("Mail service is not enabled")

        sent_at = datetime.now(timezone.utc).isoformat()
        text = (
            "This is a test email from DataBoard to verify your email configuration "
            f"is working correctly.\n\nSent at: {sent_at}"
        )
        html = f"""
        <h2>DataBoard Test Email</h2>
        <p>This is a test email to verify your email configuration is working correctly.</p>
        <ul>
          <li>SMTP Host: {config.host}</li>
          <li>Port: {config.port}</li>
          <li>Secure: {"Yes" if config.secure else "No"}</li>
          <li>From Address: {config.from_address}</li>
        </ul>
        <p><em>Sent at: {sent_at}</em></p>
        """
        await self._deliver(config, _build_message(config, to, "DataBoard Test Email", text, html))
        return True

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/password-reset?token={token}"

    async def send_password_reset(self, email: str, token: str) -> bool:
        """
        发送密码重置邮件。邮件未启用时只记录链接并返回 False。
        """
        config = self._settings.get_mail()
        url = self.reset_url(token)

        if not config.enabled:
            logger.info(f"[Mail] 邮件服务未启用，{email} 的重置链接: {url}")
            return False

        text = (
            "You have requested to reset your password for DataBoard.\n\n"
            f"Open the following link to reset your password (expires in {RESET_TOKEN_MINUTES} minutes):\n"
            f"{url}\n\nIf you did not request this password reset, please ignore this email.\n"
        )
        html = f"""
        <div style="max-width: 600px; margin: 0 auto; font-family: Arial, sans-serif;">
          <h2>DataBoard Password Reset</h2>
          <p>You have requested to reset your password for DataBoard.</p>
          <p><a href="{url}">Reset Password</a></p>
          <p>This link will expire in {RESET_TOKEN_MINUTES} minutes and can only be used once.</p>
          <p>If you did not request this password reset, please ignore this email.</p>
        </div>
        """
        await self._deliver(config, _build_message(config, email, "DataBoard Password Reset Request", text, html))
        return True
