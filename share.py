import enum
from dataclasses import asdict, dataclass
from urllib.parse import quote

SHARE_TITLE = 'Shared task'
WHATSAPP_URL = 'https://wa.me/?text='
LINK_COPIED = 'Link copied!'


class ShareChannel(enum.Enum):
  NATIVE = 'native'
  WHATSAPP = 'whatsapp'
  CLIPBOARD = 'clipboard'
  EMAIL = 'email'


@dataclass(frozen=True)
class ShareAction:
  """What the browser should do for one share choice. Never touches the store."""
  channel: ShareChannel
  kind: str
  url: str
  href: str = None
  title: str = None
  text: str = None
  notice: str = None

  def to_dict(self):
    data = asdict(self)
    data['channel'] = self.channel.value
    return data


def task_url(base_url, task_id):
  return f"{base_url.rstrip('/')}/task/{task_id}"


def _native(task, url):
  # Browsers without navigator.share skip this action silently.
  return ShareAction(ShareChannel.NATIVE, 'native-share', url, title=SHARE_TITLE, text=task.text)


def _whatsapp(task, url):
  text = quote(f"Check out this task: {task.text}\n{url}", safe='')
  return ShareAction(ShareChannel.WHATSAPP, 'open-window', url, href=WHATSAPP_URL + text)


def _clipboard(task, url):
  return ShareAction(ShareChannel.CLIPBOARD, 'copy', url, text=url, notice=LINK_COPIED)


def _email(task, url):
  subject = quote(SHARE_TITLE, safe='')
  body = quote(f"{task.text}\n{url}", safe='')
  href = f"mailto:?subject={subject}&body={body}"
  return ShareAction(ShareChannel.EMAIL, 'navigate', url, href=href)


_COMPOSERS = {
  ShareChannel.NATIVE: _native,
  ShareChannel.WHATSAPP: _whatsapp,
  ShareChannel.CLIPBOARD: _clipboard,
  ShareChannel.EMAIL: _email,
}


def compose_share(channel, task, base_url):
  channel = ShareChannel(channel)
  return _COMPOSERS[channel](task, task_url(base_url, task.id))


def share_actions(task, base_url):
  return {channel.value: compose_share(channel, task, base_url).to_dict() for channel in ShareChannel}
