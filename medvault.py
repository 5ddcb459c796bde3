import os, logging, threading
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import List, Sequence
from sqlalchemy import Column, Integer, String, Boolean, JSON, select, create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, declarative_base, Session

log_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
handler = RotatingFileHandler("medvault.log", maxBytes=10 * 1024 * 1024)
handler.setFormatter(log_formatter)
log = logging.getLogger("medvault")
log.setLevel(logging.DEBUG)
log.addHandler(handler)

root_path = os.environ.get("MEDVAULT_ROOT") or os.path.dirname(os.path.abspath(__file__))
registries_folder = os.path.join(root_path, "registries")
Base = declarative_base()

MAX_HASH_LENGTH = 64
MAX_NOTES_LENGTH = 128
MAX_PAYLOAD_BYTES = 1_000_000_000
MAX_TAG_COUNT = 10
MAX_TAG_LENGTH = 32
MAX_ENTRY_ID = 2 ** 63 - 1


def set_root_path(path: str):
    global root_path, registries_folder
    root_path = path
    registries_folder = os.path.join(root_path, "registries")
    os.makedirs(registries_folder, exist_ok=True)
    log.info(f"Root path set to: {root_path}, registries folder: {registries_folder}")


def set_logger(logger: logging.Logger):
    """Route all registry logging through an application logger."""
    global log
    log = logger


class VaultError(Exception):
    """Base class for every failure raised by a registry."""


class CorruptedIdFormat(VaultError):
    pass


class OversizedPayload(VaultError):
    pass


class ForbiddenTagType(VaultError):
    pass


class VaultEntryAbsent(VaultError):
    pass


class InvalidAuthToken(VaultError):
    pass


class PermissionBreach(VaultError):
    pass


class DuplicateVaultEntry(VaultError):
    pass


class VaultEntryRow(Base):
    __tablename__ = "vault_entries"
    entry_id = Column(Integer, primary_key=True, autoincrement=False)
    patient_hash_code = Column(String(MAX_HASH_LENGTH), nullable=False)
    medical_authority = Column(String, nullable=False)
    payload_byte_size = Column(Integer, nullable=False)
    creation_timestamp = Column(Integer, nullable=False)
    diagnostic_notes = Column(String(MAX_NOTES_LENGTH), nullable=False)
    classification_tags = Column(JSON, nullable=False)


class AccessPermission(Base):
    __tablename__ = "access_permissions"
    entry_id = Column(Integer, primary_key=True, autoincrement=False)
    accessor_identity = Column(String, primary_key=True)
    has_access_rights = Column(Boolean, nullable=False)


class RegistryState(Base):
    __tablename__ = "registry_state"
    id = Column(Integer, primary_key=True)
    total_vault_entries = Column(Integer, nullable=False, default=0)
    sequence_number = Column(Integer, nullable=False, default=0)


@dataclass(frozen=True)
class VaultEntry:
    entry_id: int
    patient_hash_code: str
    medical_authority: str
    payload_byte_size: int
    creation_timestamp: int
    diagnostic_notes: str
    classification_tags: List[str]


def _is_ascii_within(value, max_length: int) -> bool:
    return isinstance(value, str) and value.isascii() and 0 < len(value) <= max_length


def _is_storable_id(entry_id) -> bool:
    return isinstance(entry_id, int) and not isinstance(entry_id, bool) and 0 <= entry_id <= MAX_ENTRY_ID


def validate_metadata(patient_hash_code, payload_byte_size, diagnostic_notes, classification_tags) -> List[str]:
    """Check the four caller-supplied fields in order and return the tags as a list.

    The first failing rule raises its own error kind; nothing after it is checked.
    """
    if not _is_ascii_within(patient_hash_code, MAX_HASH_LENGTH):
        raise CorruptedIdFormat(f"patient hash code must be 1-{MAX_HASH_LENGTH} ASCII characters")
    if isinstance(payload_byte_size, bool) or not isinstance(payload_byte_size, int) \
            or not 0 < payload_byte_size < MAX_PAYLOAD_BYTES:
        raise OversizedPayload(f"payload size must be between 1 and {MAX_PAYLOAD_BYTES - 1} bytes")
    if not _is_ascii_within(diagnostic_notes, MAX_NOTES_LENGTH):
        raise CorruptedIdFormat(f"diagnostic notes must be 1-{MAX_NOTES_LENGTH} ASCII characters")
    if not isinstance(classification_tags, (list, tuple)) or not 0 < len(classification_tags) <= MAX_TAG_COUNT:
        raise ForbiddenTagType(f"between 1 and {MAX_TAG_COUNT} classification tags are required")
    for tag in classification_tags:
        if not _is_ascii_within(tag, MAX_TAG_LENGTH):
            raise ForbiddenTagType(f"classification tags must be 1-{MAX_TAG_LENGTH} ASCII characters")
    return list(classification_tags)


class VaultRegistry:
    __slots__ = {"registry_name", "db_path", "__engine__", "__session__", "__lock__"}

    def __init__(self, registry_name: str, to_create: bool = True):
        os.makedirs(registries_folder, exist_ok=True)
        self.registry_name = registry_name
        self.db_path = os.path.join(registries_folder, f"{registry_name}.db")
        self.__lock__ = threading.RLock()
        path_exists = os.path.exists(self.db_path)
        if not path_exists and not to_create:
            log.error(f"No such registry: '{registry_name}'!")
            raise VaultError(f"No such registry: '{registry_name}'")
        db_url = f"sqlite:///{self.db_path}"
        self.__engine__ = create_engine(db_url, echo=False, future=True)
        self.__session__ = sessionmaker(bind=self.__engine__, class_=Session, expire_on_commit=False)
        if not path_exists:
            log.info(f"Creating registry '{registry_name}'!")
        self.__create_tables__()

    def __create_tables__(self):
        log.debug("Creating registry tables in the database.")
        with self.__engine__.begin() as conn:
            Base.metadata.create_all(conn)
        with self.__session__() as session:
            with session.begin():
                if session.get(RegistryState, 1) is None:
                    session.add(RegistryState(id=1, total_vault_entries=0, sequence_number=0))

    @staticmethod
    def __state__(session) -> RegistryState:
        return session.get(RegistryState, 1)

    @staticmethod
    def __require_entry__(session, entry_id) -> VaultEntryRow:
        if not _is_storable_id(entry_id):
            raise VaultEntryAbsent(f"No vault entry with id {entry_id}")
        entry = session.get(VaultEntryRow, entry_id)
        if entry is None:
            raise VaultEntryAbsent(f"No vault entry with id {entry_id}")
        return entry

    def __require_authority__(self, session, caller, entry_id) -> VaultEntryRow:
        entry = self.__require_entry__(session, entry_id)
        if entry.medical_authority != caller:
            raise InvalidAuthToken(f"'{caller}' is not the medical authority of entry {entry_id}")
        return entry

    def __create__(self, caller, patient_hash_code, payload_byte_size, diagnostic_notes, classification_tags):
        tags = validate_metadata(patient_hash_code, payload_byte_size, diagnostic_notes, classification_tags)
        with self.__session__() as session:
            with session.begin():
                state = self.__state__(session)
                new_id = state.total_vault_entries + 1
                if session.get(VaultEntryRow, new_id) is not None:
                    raise DuplicateVaultEntry(f"Vault entry {new_id} already exists")
                state.sequence_number += 1
                log.debug(f"Inserting vault entry {new_id} at sequence {state.sequence_number}.")
                session.add(VaultEntryRow(
                    entry_id=new_id,
                    patient_hash_code=patient_hash_code,
                    medical_authority=caller,
                    payload_byte_size=payload_byte_size,
                    creation_timestamp=state.sequence_number,
                    diagnostic_notes=diagnostic_notes,
                    classification_tags=tags,
                ))
                session.add(AccessPermission(entry_id=new_id, accessor_identity=caller, has_access_rights=True))
                state.total_vault_entries = new_id
                try:
                    session.flush()
                except IntegrityError as exc:
                    raise DuplicateVaultEntry(f"Vault entry {new_id} already exists") from exc
        return new_id

    def create_vault_entry(self, caller: str, patient_hash_code: str, payload_byte_size: int,
                           diagnostic_notes: str, classification_tags: Sequence[str]) -> int:
        with self.__lock__:
            try:
                entry_id = self.__create__(caller, patient_hash_code, payload_byte_size,
                                           diagnostic_notes, classification_tags)
            except VaultError as exc:
                log.warning(f"Rejected vault entry from '{caller}': {type(exc).__name__}: {exc}")
                raise
        log.info(f"Vault entry {entry_id} created by '{caller}' in registry '{self.registry_name}'.")
        return entry_id

    def __transfer__(self, caller, entry_id, new_authority):
        with self.__session__() as session:
            with session.begin():
                entry = self.__require_authority__(session, caller, entry_id)
                if not isinstance(new_authority, str) or not new_authority:
                    raise InvalidAuthToken(f"Cannot transfer entry {entry_id} to an empty authority")
                log.debug(f"Reassigning entry {entry_id} from '{caller}' to '{new_authority}'.")
                entry.medical_authority = new_authority
                self.__state__(session).sequence_number += 1

    def transfer_medical_authority(self, caller: str, entry_id: int, new_authority: str) -> bool:
        with self.__lock__:
            try:
                self.__transfer__(caller, entry_id, new_authority)
            except VaultError as exc:
                log.warning(f"Rejected authority transfer of entry {entry_id} by '{caller}': {type(exc).__name__}")
                raise
        log.info(f"Medical authority of entry {entry_id} transferred to '{new_authority}'.")
        return True

    def __modify__(self, caller, entry_id, new_patient_hash, new_payload_size, new_notes, new_tags):
        with self.__session__() as session:
            with session.begin():
                entry = self.__require_authority__(session, caller, entry_id)
                tags = validate_metadata(new_patient_hash, new_payload_size, new_notes, new_tags)
                log.debug(f"Overwriting metadata of entry {entry_id}.")
                entry.patient_hash_code = new_patient_hash
                entry.payload_byte_size = new_payload_size
                entry.diagnostic_notes = new_notes
                entry.classification_tags = tags
                self.__state__(session).sequence_number += 1

    def modify_vault_metadata(self, caller: str, entry_id: int, new_patient_hash: str, new_payload_size: int,
                              new_notes: str, new_tags: Sequence[str]) -> bool:
        with self.__lock__:
            try:
                self.__modify__(caller, entry_id, new_patient_hash, new_payload_size, new_notes, new_tags)
            except VaultError as exc:
                log.warning(f"Rejected metadata update of entry {entry_id} by '{caller}': {type(exc).__name__}")
                raise
        log.info(f"Metadata of entry {entry_id} modified by '{caller}'.")
        return True

    def __load__(self, entry_id) -> VaultEntry:
        log.debug(f"Retrieving entry {entry_id} from registry.")
        if not _is_storable_id(entry_id):
            log.warning(f"Entry {entry_id} not found in registry '{self.registry_name}'.")
            raise VaultEntryAbsent(f"No vault entry with id {entry_id}")
        with self.__lock__, self.__session__() as session:
            entry = session.execute(
                select(VaultEntryRow).where(VaultEntryRow.entry_id == entry_id)
            ).scalar_one_or_none()
            if entry is None:
                log.warning(f"Entry {entry_id} not found in registry '{self.registry_name}'.")
                raise VaultEntryAbsent(f"No vault entry with id {entry_id}")
            return VaultEntry(
                entry_id=entry.entry_id,
                patient_hash_code=entry.patient_hash_code,
                medical_authority=entry.medical_authority,
                payload_byte_size=entry.payload_byte_size,
                creation_timestamp=entry.creation_timestamp,
                diagnostic_notes=entry.diagnostic_notes,
                classification_tags=list(entry.classification_tags),
            )

    def get_vault_entry(self, entry_id: int) -> VaultEntry:
        return self.__load__(entry_id)

    def get_classification_tags(self, entry_id: int) -> List[str]:
        return self.__load__(entry_id).classification_tags

    def get_medical_authority(self, entry_id: int) -> str:
        return self.__load__(entry_id).medical_authority

    def get_creation_timestamp(self, entry_id: int) -> int:
        return self.__load__(entry_id).creation_timestamp

    def get_entry_payload_size(self, entry_id: int) -> int:
        return self.__load__(entry_id).payload_byte_size

    def get_diagnostic_summary(self, entry_id: int) -> str:
        return self.__load__(entry_id).diagnostic_notes

    def get_total_vault_count(self) -> int:
        with self.__lock__, self.__session__() as session:
            return self.__state__(session).total_vault_entries

    def check_access_permissions(self, entry_id: int, accessor_identity: str) -> bool:
        # Lookup only; mutating operations never consult this table.
        if not _is_storable_id(entry_id):
            log.warning(f"No permission record for '{accessor_identity}' on entry {entry_id}.")
            raise PermissionBreach(f"No permission record for '{accessor_identity}' on entry {entry_id}")
        with self.__lock__, self.__session__() as session:
            permission = session.get(AccessPermission, (entry_id, accessor_identity))
            if permission is None:
                log.warning(f"No permission record for '{accessor_identity}' on entry {entry_id}.")
                raise PermissionBreach(f"No permission record for '{accessor_identity}' on entry {entry_id}")
            return permission.has_access_rights

    def as_principal(self, identity: str) -> "PrincipalSession":
        return PrincipalSession(self, identity)

    def delete_registry(self):
        self.__engine__.dispose()
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
            log.info(f"Registry '{self.registry_name}' deleted successfully.")
        else:
            log.warning(f"Registry '{self.registry_name}' does not exist.")


class PrincipalSession:
    """Mutating calls on behalf of one authenticated identity."""

    __slots__ = ("registry", "identity")

    def __init__(self, registry: VaultRegistry, identity: str):
        self.registry = registry
        self.identity = identity

    def create_vault_entry(self, patient_hash_code: str, payload_byte_size: int,
                           diagnostic_notes: str, classification_tags: Sequence[str]) -> int:
        return self.registry.create_vault_entry(self.identity, patient_hash_code, payload_byte_size,
                                                diagnostic_notes, classification_tags)

    def transfer_medical_authority(self, entry_id: int, new_authority: str) -> bool:
        return self.registry.transfer_medical_authority(self.identity, entry_id, new_authority)

    def modify_vault_metadata(self, entry_id: int, new_patient_hash: str, new_payload_size: int,
                              new_notes: str, new_tags: Sequence[str]) -> bool:
        return self.registry.modify_vault_metadata(self.identity, entry_id, new_patient_hash,
                                                   new_payload_size, new_notes, new_tags)

    def check_own_access(self, entry_id: int) -> bool:
        return self.registry.check_access_permissions(entry_id, self.identity)
