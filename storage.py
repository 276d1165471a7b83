"""
檔案儲存

上傳的檔案放在 UPLOAD_FOLDER, 由 /uploads/<name> 提供下載。
檔名前面加 uuid, 同名檔案不會互相覆蓋。
"""
from dataclasses import dataclass
import logging
import os
import uuid

from werkzeug.utils import secure_filename

from errors import ValidationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    url: str
    storage_id: str
    size: int


class LocalFileStorage:

    def __init__(self, upload_folder, url_prefix='/uploads', allowed_extensions=None):
        self.upload_folder = upload_folder
        self.url_prefix = url_prefix.rstrip('/')
        self.allowed_extensions = {ext.lower() for ext in (allowed_extensions or ())}

    @classmethod
    def from_config(cls, settings):
        return cls(
            settings['UPLOAD_FOLDER'],
            settings.get('UPLOAD_URL_PREFIX', '/uploads'),
            settings.get('ALLOWED_EXTENSIONS'),
        )

    def is_allowed(self, filename):
        if '.' not in filename:
            return False
        if not self.allowed_extensions:
            return True
        return filename.rsplit('.', 1)[1].lower() in self.allowed_extensions

    def path_for(self, storage_id):
        return os.path.join(self.upload_folder, storage_id)

    def upload(self, data, filename):
        """
        存檔

        Args:
            data: bytes
            filename: 使用者上傳時的原始檔名

        Returns:
            StoredFile
        """
        safe_name = secure_filename(filename or '')
        if not safe_name or not self.is_allowed(safe_name):
            raise ValidationFailed(details=[
                {'path': 'file', 'message': f'File type not allowed: {filename}'}
            ])

        os.makedirs(self.upload_folder, exist_ok=True)
        storage_id = f'{uuid.uuid4().hex}_{safe_name}'

        with open(self.path_for(storage_id), 'wb') as fh:
            fh.write(data)

        logger.info(f"Stored file {storage_id} ({len(data)} bytes)")
        return StoredFile(
            url=f'{self.url_prefix}/{storage_id}',
            storage_id=storage_id,
            size=len(data),
        )

    def delete(self, storage_id):
        """刪除檔案, 檔案不存在也不算錯"""
        if not storage_id:
            return False

        path = self.path_for(secure_filename(storage_id))
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning(f"File already removed: {storage_id}")
            return False
        return True
