"""
Source profiles: where a filing source lives and how its pages are laid out.

A profile holds the URLs, selectors, listing column positions and detail
labels the extraction session needs for one site. ``SOURCES`` maps the site
keys accepted by the scrape trigger to their profile.
"""

from dataclasses import dataclass, field

from lienflow.utils.exceptions import SourceNotSupportedError


@dataclass(frozen=True)
class SourceProfile:
    """Layout of one filing source."""

    site: str
    state: str
    search_url: str

    # Search form
    search_input: str
    advanced_button: str
    file_type_select: str
    date_start_input: str
    date_end_input: str
    submit_button: str
    result_count: str

    # Listing
    rows: str
    row_open_control: str
    next_page_button: str
    page_button: str  # formatted with page=

    # Detail / history views
    detail_panel: str
    history_button: str
    history_dialog: str
    download_link: str
    close_button: str

    # Listing cell positions, keyed by LienRecord field
    columns: dict[str, int] = field(default_factory=dict)
    # Detail labels, keyed by LienRecord field
    detail_labels: dict[str, str] = field(default_factory=dict)
    history_labels: dict[str, str] = field(default_factory=dict)

    def row(self, index: int) -> str:
        return f"{self.rows} >> nth={index}"

    def cell(self, row_index: int, column: str) -> str:
        return f"{self.row(row_index)} >> td >> nth={self.columns[column]}"

    def row_control(self, row_index: int) -> str:
        return f"{self.row(row_index)} >> {self.row_open_control} >> nth=0"

    def panel_for(self, file_number: str) -> str:
        return f'{self.detail_panel}:has-text("{file_number}")'

    def page(self, number: int) -> str:
        return self.page_button.format(page=number)


CA_SOS = SourceProfile(
    site="ca_sos",
    state="CA",
    search_url="https://bizfileonline.sos.ca.gov/search/ucc",
    search_input="label=Search by name or file number",
    advanced_button="role=button:Advanced",
    file_type_select="label=File Type",
    date_start_input="label=File Date: Start",
    date_end_input="label=File Date: End",
    submit_button="role=button:^Search$",
    result_count="text=/Results:\\s*\\d+/",
    rows="table tbody tr",
    row_open_control="button",
    next_page_button="role=button:^Next Page$",
    page_button="role=button:^{page}$",
    detail_panel='[class*="detail"]',
    history_button="role=button:View History",
    history_dialog="role=dialog:History",
    download_link='[role="dialog"] a:has-text("Download")',
    close_button='[aria-label="Close"], button:has-text("×") >> nth=-1',
    columns={
        "ucc_type": 0,
        "file_number": 2,
        "status": 4,
        "filing_date": 5,
        "lapse_date": 6,
    },
    detail_labels={
        "debtor_name": "Debtor Name",
        "debtor_address": "Debtor Address",
        "secured_party_name": "Secured Party Name",
        "secured_party_address": "Secured Party Address",
    },
    history_labels={
        "document_type": "Document Type",
    },
)

SOURCES: dict[str, SourceProfile] = {
    CA_SOS.site: CA_SOS,
}


def get_source(site: str) -> SourceProfile:
    """
    Look up a source profile by site key.

    Raises:
        SourceNotSupportedError: If no profile is registered for ``site``
    """
    try:
        return SOURCES[site]
    except KeyError:
        raise SourceNotSupportedError(site) from None
